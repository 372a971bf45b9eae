#!/usr/bin/env python3
"""
kmagent - keyfiles

Reconciliation of authorized_keys files against a server-issued snapshot of
SSH key assignments. Shared by the kmagent and kmagent-verify commands.

Per managed user:
  sshd_config templates -> resolved file paths -> validated desired keys
  -> diff against current content -> atomic write (or dry-run report)

Nothing in here aborts a run: per-user and per-file problems become
findings on the Reporter and an Error outcome, and processing continues.
"""

from __future__ import annotations

import base64
import binascii
import collections
import dataclasses
import errno
import hashlib
import os
import pwd
import re
import secrets
import stat
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

SSHD_CONFIG_PATH = "/etc/ssh/sshd_config"
DEFAULT_TEMPLATE = ".ssh/authorized_keys"
DEFAULT_SHELL = "/bin/bash"
DISABLED_SHELLS = ("/usr/bin/false", "/bin/false", "/sbin/nologin", "/usr/sbin/nologin")

FILE_MODE = 0o600
DIR_MODE = 0o700

KNOWN_KEY_TYPES = (
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)

HEADER_BEGIN = "# --- BEGIN KMAGENT MANAGED HEADER ---"
HEADER_END = "# --- END KMAGENT MANAGED HEADER ---"
MANAGED_HEADER = (
    f"{HEADER_BEGIN}\n"
    "# This file is managed exclusively by kmagent.\n"
    "# Do not edit by hand: manual changes are overwritten on the next run.\n"
    "# Change key assignments on the server instead.\n"
    f"{HEADER_END}\n"
)

# -------------------------
# Errors
# -------------------------


class KmagentError(RuntimeError):
    reason = "Error"


class ConfigUnreadable(KmagentError):
    reason = "ConfigUnreadable"


class UserNotFound(KmagentError):
    reason = "UserNotFound"


class KeyRejected(KmagentError):
    reason = "KeyRejected"


class MalformedKey(KeyRejected):
    reason = "MalformedKey"


class UnknownKeyType(KeyRejected):
    reason = "UnknownKeyType"


class EmptyPayload(KeyRejected):
    reason = "EmptyPayload"


class FileApplyError(KmagentError):
    reason = "FileApplyError"


class DirectoryCreateFailed(FileApplyError):
    reason = "DirectoryCreateFailed"


class ReadFailed(FileApplyError):
    reason = "ReadFailed"


class WriteFailed(FileApplyError):
    reason = "WriteFailed"


class RenameFailed(FileApplyError):
    reason = "RenameFailed"


class OwnershipDenied(KmagentError):
    reason = "OwnershipDenied"


class AssignmentSourceError(KmagentError):
    reason = "AssignmentSourceError"


class UpdateError(KmagentError):
    reason = "UpdateError"


# -------------------------
# Reporting
# -------------------------


@dataclasses.dataclass
class Finding:
    target: str
    severity: str  # "PASS" | "INFO" | "WARN" | "FAIL"
    action: str
    details: str


class Reporter:
    def __init__(self) -> None:
        self.items: List[Finding] = []

    def add(self, target: str, severity: str, action: str, details: str) -> None:
        self.items.append(Finding(target, severity, action, details))

    def passed(self, target: str, action: str, details: str = "") -> None:
        self.add(target, "PASS", action, details)

    def info(self, target: str, action: str, details: str) -> None:
        self.add(target, "INFO", action, details)

    def warn(self, target: str, action: str, details: str) -> None:
        self.add(target, "WARN", action, details)

    def fail(self, target: str, action: str, details: str) -> None:
        self.add(target, "FAIL", action, details)

    def count(self, severity: str) -> int:
        return sum(1 for x in self.items if x.severity == severity)

    def summarize(self) -> Tuple[int, int, int]:
        return self.count("INFO"), self.count("WARN"), self.count("FAIL")

    def print(self, *, verbose: bool = False) -> None:
        by_target: Dict[str, List[Finding]] = {}
        for x in self.items:
            by_target.setdefault(x.target, []).append(x)

        # sorted() is stable, so findings keep their order within an action
        sev_order = {"FAIL": 0, "WARN": 1, "INFO": 2, "PASS": 3}
        for tgt in sorted(by_target.keys()):
            print(f"\n== {tgt} ==")
            for it in sorted(
                by_target[tgt], key=lambda z: (sev_order.get(z.severity, 9), z.action)
            ):
                if it.severity == "PASS" and not verbose:
                    continue
                prefix = {
                    "PASS": "[OK] ",
                    "INFO": "[..] ",
                    "WARN": "[!!] ",
                    "FAIL": "[XX] ",
                }.get(it.severity, "[?] ")
                line = f"{prefix}{it.action}"
                if it.details:
                    line += f": {it.details}"
                print(line)


# -------------------------
# Data model
# -------------------------


def is_managed_uid(uid: int) -> bool:
    return uid == 0 or uid >= 1000


@dataclasses.dataclass(frozen=True)
class ManagedUser:
    username: str
    uid: int
    gid: int
    home: str
    shell: str = DEFAULT_SHELL
    disabled: bool = False

    @classmethod
    def from_fields(
        cls, username: str, uid: int, gid: int, home: str, shell: str
    ) -> "ManagedUser":
        """Apply identity defaults: empty home and shell are filled in,
        and nologin/false shells mark the account disabled."""
        if not home:
            home = "/root" if uid == 0 else f"/home/{username}"
        disabled = shell in DISABLED_SHELLS
        if not shell or disabled:
            shell = DEFAULT_SHELL
        return cls(username, uid, gid, home, shell, disabled)


def _text(d: Dict[str, Any], *keys: str) -> str:
    value = ""
    for k in keys:
        if d.get(k) not in (None, ""):
            value = str(d[k]).strip()
            break
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise ValueError(f"{keys[0]} is not valid UTF-8 text") from ex
    return value


@dataclasses.dataclass(frozen=True)
class KeyAssignment:
    username: str
    public_key: str
    key_type: str = ""
    fingerprint: str = ""
    comment: Optional[str] = None
    use_primary_key: bool = False
    assignment_id: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "KeyAssignment":
        """Map one server record (camelCase JSON) onto a KeyAssignment.

        Raises ValueError when a required field is missing or a text field
        cannot be written out as UTF-8.
        """
        if not isinstance(d, dict):
            raise ValueError(f"assignment must be a mapping, got {type(d).__name__}")
        username = _text(d, "username")
        public_key = _text(d, "publicKey", "public_key")
        if not username:
            raise ValueError("assignment has no username")
        if not public_key:
            raise ValueError(f"assignment for {username} has no publicKey")
        comment = _text(d, "comment")
        return cls(
            username=username,
            public_key=public_key,
            key_type=_text(d, "keyType", "key_type"),
            fingerprint=_text(d, "fingerprint"),
            comment=comment or None,
            use_primary_key=bool(d.get("usePrimaryKey", d.get("use_primary_key"))),
            assignment_id=_text(d, "assignmentId", "assignment_id"),
        )


@dataclasses.dataclass(frozen=True)
class ManagedFile:
    path: str
    user: ManagedUser


# Outcome actions
WRITTEN = "Written"
SKIPPED_NOOP = "SkippedNoop"
SKIPPED_DRY_RUN = "SkippedDryRun"
ERROR = "Error"


@dataclasses.dataclass
class Outcome:
    file: ManagedFile
    action: str
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    permissions_fixed: bool = False
    error: str = ""


@dataclasses.dataclass
class RunReport:
    outcomes: List[Outcome] = dataclasses.field(default_factory=list)
    users_processed: int = 0
    users_skipped: int = 0

    @property
    def files_written(self) -> int:
        return sum(1 for o in self.outcomes if o.action == WRITTEN)

    @property
    def keys_added(self) -> int:
        return sum(o.added for o in self.outcomes if o.action == WRITTEN)

    @property
    def keys_removed(self) -> int:
        return sum(o.removed for o in self.outcomes if o.action == WRITTEN)

    @property
    def errors(self) -> int:
        return sum(1 for o in self.outcomes if o.action == ERROR)


# -------------------------
# sshd_config directives
# -------------------------

_DIRECTIVE_RE = re.compile(r"^(\S+?)(?:\s*=\s*|\s+)(.*)$")


def parse_authorized_keys_templates(text: str) -> List[str]:
    """Collect AuthorizedKeysFile templates in first-seen order.

    Directives from Match blocks are unioned with global ones. Falls back
    to the default template when the text has none. A directive whose only
    value is `none` means sshd reads no key file, so that yields [].
    """
    found: List[str] = []
    saw_none = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _DIRECTIVE_RE.match(line)
        if not m or m.group(1).lower() != "authorizedkeysfile":
            continue
        for token in m.group(2).split():
            token = token.strip('"')
            if token.lower() == "none":
                saw_none = True
                continue
            if token and token not in found:
                found.append(token)
    if found or saw_none:
        return found
    return [DEFAULT_TEMPLATE]


def read_sshd_config(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError as ex:
        raise ConfigUnreadable(f"{path}: {ex.strerror or ex}") from ex


def discover_templates(path: str, rep: Reporter) -> List[str]:
    try:
        text = read_sshd_config(path)
    except ConfigUnreadable as ex:
        rep.warn("config", "sshd-config", f"{ex.reason}: {ex}; using {DEFAULT_TEMPLATE}")
        return [DEFAULT_TEMPLATE]
    templates = parse_authorized_keys_templates(text)
    if not templates:
        rep.warn(
            "config", "sshd-config", f"{path}: AuthorizedKeysFile none; no key files to manage"
        )
        return templates
    rep.info("config", "sshd-config", f"{path}: AuthorizedKeysFile {' '.join(templates)}")
    return templates


# -------------------------
# Path templates
# -------------------------


def expand_template(
    template: str, user: ManagedUser, rep: Optional[Reporter] = None
) -> str:
    """Expand %u, %h and %% left to right; relative results live under home.

    Unknown %X sequences are kept verbatim. No filesystem access.
    """
    out: List[str] = []
    i = 0
    while i < len(template):
        c = template[i]
        if c != "%":
            out.append(c)
            i += 1
            continue
        nxt = template[i + 1 : i + 2]
        if nxt == "%":
            out.append("%")
        elif nxt == "u":
            out.append(user.username)
        elif nxt == "h":
            out.append(user.home)
        else:
            out.append("%" + nxt)
            if rep is not None:
                token = f"%{nxt}" if nxt else "trailing %"
                rep.warn(
                    user.username,
                    "path-template",
                    f"unknown token {token} in {template!r} left as-is",
                )
        i += 2

    path = "".join(out)
    if not os.path.isabs(path):
        path = os.path.join(user.home, path)
    return os.path.normpath(path)


def resolve_targets(
    templates: Sequence[str], user: ManagedUser, rep: Optional[Reporter] = None
) -> List[ManagedFile]:
    """Resolve every template for one user; identical paths collapse, first wins."""
    paths: List[str] = []
    for template in templates:
        path = expand_template(template, user, rep)
        if path not in paths:
            paths.append(path)
    return [ManagedFile(p, user) for p in paths]


def inside_home(path: str, home: str) -> bool:
    path = os.path.normpath(path)
    home = os.path.normpath(home)
    if path == home or not os.path.isabs(home):
        return False
    return os.path.commonpath([path, home]) == home


# -------------------------
# Identity store
# -------------------------


class UserDirectory:
    """Identity lookups against pwd, or a passwd-format file when given one.

    Every call reads the store afresh so that accounts deleted after the
    user list was built are noticed.
    """

    def __init__(self, passwd_path: Optional[str] = None) -> None:
        self.passwd_path = passwd_path

    def _file_entries(self) -> List[ManagedUser]:
        assert self.passwd_path is not None
        try:
            with open(self.passwd_path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as ex:
            raise KmagentError(
                f"cannot read identity store {self.passwd_path}: {ex.strerror or ex}"
            ) from ex

        users: List[ManagedUser] = []
        for line in lines:
            if not line.strip() or line.startswith("#"):
                continue
            parts = line.split(":")
            if len(parts) < 7:
                continue
            try:
                uid, gid = int(parts[2]), int(parts[3])
            except ValueError:
                continue
            users.append(ManagedUser.from_fields(parts[0], uid, gid, parts[5], parts[6]))
        return users

    def all_users(self) -> List[ManagedUser]:
        if self.passwd_path is not None:
            return self._file_entries()
        return [
            ManagedUser.from_fields(p.pw_name, p.pw_uid, p.pw_gid, p.pw_dir, p.pw_shell)
            for p in pwd.getpwall()
        ]

    def lookup(self, username: str) -> ManagedUser:
        if self.passwd_path is not None:
            for u in self._file_entries():
                if u.username == username:
                    return u
            raise UserNotFound(f"{username} is not in {self.passwd_path}")
        try:
            p = pwd.getpwnam(username)
        except KeyError as ex:
            raise UserNotFound(f"{username} is not in the user database") from ex
        return ManagedUser.from_fields(p.pw_name, p.pw_uid, p.pw_gid, p.pw_dir, p.pw_shell)

    def list_managed(
        self,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> List[ManagedUser]:
        include_set = set(include or [])
        exclude_set = set(exclude or [])
        users = [
            u
            for u in self.all_users()
            if is_managed_uid(u.uid)
            and (not include_set or u.username in include_set)
            and u.username not in exclude_set
        ]
        users.sort(key=lambda u: (u.uid, u.username))
        return users


# -------------------------
# Key validation
# -------------------------


@dataclasses.dataclass(frozen=True)
class PublicKey:
    key_type: str
    payload: str
    comment: str
    fingerprint: str


def fingerprint_of(blob: bytes) -> str:
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def validate_key(line: str, declared_type: str = "") -> PublicKey:
    """Check '<type> <base64> [comment]' and return the parsed key.

    A bare payload is accepted when the declared type is a known one.
    Raises MalformedKey, UnknownKeyType or EmptyPayload.
    """
    parts = line.split()
    if len(parts) == 1 and declared_type in KNOWN_KEY_TYPES:
        parts = [declared_type] + parts
    if len(parts) < 2:
        raise MalformedKey("expected '<type> <base64> [comment]'")

    key_type, payload = parts[0], parts[1]
    if key_type not in KNOWN_KEY_TYPES:
        raise UnknownKeyType(f"unrecognized key type {key_type!r}")
    if declared_type in KNOWN_KEY_TYPES and declared_type != key_type:
        raise MalformedKey(f"declared type {declared_type} but key is {key_type}")
    if not payload.strip("="):
        raise EmptyPayload("key payload is empty")
    try:
        blob = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise MalformedKey(f"payload is not valid base64 ({ex})") from ex
    if not blob:
        raise EmptyPayload("key payload decodes to zero bytes")

    return PublicKey(key_type, payload, " ".join(parts[2:]), fingerprint_of(blob))


def normalize_line(line: str) -> str:
    return " ".join(line.split())


def describe_line(line: str) -> str:
    try:
        return validate_key(line).fingerprint
    except KeyRejected:
        return line if len(line) <= 48 else line[:45] + "..."


def render_key_line(key: PublicKey, assignment: KeyAssignment) -> str:
    parts = [key.key_type, key.payload]
    comment = assignment.comment if assignment.comment is not None else key.comment
    if comment:
        parts.append(comment)
    tag = "kmagent"
    if assignment.assignment_id:
        tag += f":{assignment.assignment_id}"
    if assignment.use_primary_key:
        tag += ":primary"
    parts.append(tag)
    line = normalize_line(" ".join(parts))
    try:
        line.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise MalformedKey("comment or assignment id is not valid UTF-8 text") from ex
    return line


# -------------------------
# Key file content
# -------------------------


def parse_key_lines(content: str) -> List[str]:
    """Return the key entries of a file, skipping the managed header.

    Two states: outside the header, every non-blank non-comment line is a
    key entry; inside it, comment lines are skipped until HEADER_END. A
    non-comment line inside an unterminated header closes it.
    """
    keys: List[str] = []
    in_header = False
    for raw in content.splitlines():
        line = raw.strip()
        if in_header:
            if line == HEADER_END:
                in_header = False
                continue
            if not line or line.startswith("#"):
                continue
            in_header = False
        if line == HEADER_BEGIN:
            in_header = True
            continue
        if not line or line.startswith("#"):
            continue
        keys.append(normalize_line(line))
    return keys


def has_managed_header(content: str) -> bool:
    return any(line.strip() == HEADER_BEGIN for line in content.splitlines())


def render_file(lines: Sequence[str]) -> str:
    body = "".join(f"{line}\n" for line in lines)
    return MANAGED_HEADER + body


@dataclasses.dataclass
class KeyDiff:
    to_add: List[str]
    to_remove: List[str]
    unchanged: List[str]

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove


def compute_diff(current: Sequence[str], desired: Sequence[str]) -> KeyDiff:
    # Counter so that duplicated entries in the file count as removals.
    remaining = collections.Counter(current)
    to_add: List[str] = []
    unchanged: List[str] = []
    for line in desired:
        if remaining[line] > 0:
            remaining[line] -= 1
            unchanged.append(line)
        else:
            to_add.append(line)
    to_remove: List[str] = []
    for line in current:
        if remaining[line] > 0:
            remaining[line] -= 1
            to_remove.append(line)
    return KeyDiff(to_add, to_remove, unchanged)


# -------------------------
# Atomic writes and permissions
# -------------------------


def is_privileged() -> bool:
    return os.geteuid() == 0


def _refusal(path: str, ex: OSError) -> str:
    if ex.errno == errno.ELOOP:
        return f"{path} is a symlink; refusing to follow it"
    if ex.errno == errno.ENOTDIR:
        return f"{path} is a symlink or not a directory; refusing to follow it"
    return f"{path}: {ex.strerror or ex}"


class AtomicFileWriter:
    """Replace managed files via temp file + rename and hold the permission floor.

    Every filesystem call below the user's home goes through directory file
    descriptors opened with O_NOFOLLOW, so a symlink planted by the user at
    the key directory or the key file is refused instead of followed. The
    home itself is never created.
    """

    def __init__(self, rep: Reporter, *, privileged: Optional[bool] = None) -> None:
        self.rep = rep
        self.privileged = is_privileged() if privileged is None else privileged

    def _chown(self, path: str, user: ManagedUser, fd: Optional[int] = None) -> None:
        if not self.privileged:
            if user.uid != os.geteuid():
                raise OwnershipDenied(
                    f"cannot give {path} to uid {user.uid} (not running as root)"
                )
            return
        try:
            if fd is not None:
                os.fchown(fd, user.uid, user.gid)
            else:
                os.chown(path, user.uid, user.gid, follow_symlinks=False)
        except OSError as ex:
            raise OwnershipDenied(f"chown {user.uid}:{user.gid} {path}: {ex.strerror or ex}") from ex

    def set_owner(self, path: str, user: ManagedUser, fd: Optional[int] = None) -> None:
        try:
            self._chown(path, user, fd)
        except OwnershipDenied as ex:
            self.rep.warn(path, "ownership", f"{ex.reason}: {ex}; permissions still enforced")

    def _hold_dir(self, fd: int, path: str, user: ManagedUser) -> None:
        try:
            if stat.S_IMODE(os.fstat(fd).st_mode) != DIR_MODE:
                os.fchmod(fd, DIR_MODE)
        except OSError as ex:
            raise WriteFailed(f"chmod {DIR_MODE:o} {path}: {ex.strerror or ex}") from ex
        self.set_owner(path, user, fd)

    def _open_child(
        self, dfd: int, name: str, path: str, user: ManagedUser, *, create: bool, flags: int
    ) -> Tuple[int, bool]:
        flags |= os.O_RDONLY | os.O_DIRECTORY
        try:
            return os.open(name, flags, dir_fd=dfd), False
        except FileNotFoundError:
            if not create:
                raise
        except OSError as ex:
            raise WriteFailed(_refusal(path, ex)) from ex

        try:
            os.mkdir(name, DIR_MODE, dir_fd=dfd)
            fd = os.open(name, flags, dir_fd=dfd)
        except OSError as ex:
            raise DirectoryCreateFailed(_refusal(path, ex)) from ex
        self.rep.info(path, "mkdir", f"created (mode {DIR_MODE:o})")
        try:
            self._hold_dir(fd, path, user)
        except FileApplyError:
            os.close(fd)
            raise
        return fd, True

    def _open_parent(
        self, parent: str, user: ManagedUser, *, create: bool
    ) -> Tuple[int, bool]:
        """Open the directory that holds a managed file.

        Returns (fd, hold): hold is True when the directory sits inside the
        home, already existed and so still needs the permission floor.
        Directories created here get it straight away. A missing component
        raises FileNotFoundError unless create is set; a missing home (or
        a missing grandparent outside the home) is DirectoryCreateFailed.
        """
        home = os.path.normpath(user.home)
        parent = os.path.normpath(parent)
        if parent in (home, os.path.dirname(parent)):
            base, names, private = parent, [], False
        elif inside_home(parent, home):
            base, names, private = home, os.path.relpath(parent, home).split(os.sep), True
        else:
            base, names, private = os.path.dirname(parent), [os.path.basename(parent)], False

        try:
            fd = os.open(base, os.O_RDONLY | os.O_DIRECTORY)
        except FileNotFoundError as ex:
            if not create:
                raise
            raise DirectoryCreateFailed(f"{base} does not exist; not creating it") from ex
        except OSError as ex:
            raise WriteFailed(_refusal(base, ex)) from ex

        path, created = base, False
        flags = os.O_NOFOLLOW if private else 0
        for name in names:
            path = os.path.join(path, name)
            try:
                child, created = self._open_child(
                    fd, name, path, user, create=create, flags=flags
                )
            finally:
                os.close(fd)
            fd = child
        return fd, private and not created

    def read(self, target: ManagedFile) -> Optional[str]:
        """Current content of a managed file, or None when it does not exist.

        Follows the same path rules as write, and never changes anything.
        """
        parent, name = os.path.split(target.path)
        try:
            dfd, _ = self._open_parent(parent, target.user, create=False)
        except FileNotFoundError:
            return None
        try:
            fd = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK, dir_fd=dfd)
        except FileNotFoundError:
            return None
        except OSError as ex:
            raise ReadFailed(_refusal(target.path, ex)) from ex
        finally:
            os.close(dfd)
        with os.fdopen(fd, "rb") as f:
            if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
                raise ReadFailed(f"{target.path} is not a regular file")
            data = f.read()
        return data.decode("utf-8", errors="replace")

    def inspect(self, target: ManagedFile) -> List[str]:
        """Describe permission/ownership drift of an existing file. Read-only."""
        checks = [(target.path, FILE_MODE)]
        parent = os.path.dirname(target.path)
        if inside_home(parent, target.user.home):
            checks.insert(0, (parent, DIR_MODE))

        drift: List[str] = []
        for path, want in checks:
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                drift.append(f"{path} is a symlink")
                continue
            if stat.S_IMODE(st.st_mode) != want:
                drift.append(f"{path} mode {stat.S_IMODE(st.st_mode):o} != {want:o}")
            if self.privileged and (st.st_uid, st.st_gid) != (target.user.uid, target.user.gid):
                drift.append(f"{path} owner {st.st_uid}:{st.st_gid}")
        return drift

    def repair(self, target: ManagedFile) -> None:
        """Fix modes and ownership in place without touching content."""
        parent, name = os.path.split(target.path)
        try:
            dfd, hold = self._open_parent(parent, target.user, create=False)
        except FileNotFoundError as ex:
            raise WriteFailed(f"{parent}: {ex.strerror or ex}") from ex
        try:
            if hold:
                self._hold_dir(dfd, parent, target.user)
            try:
                fd = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK, dir_fd=dfd)
            except OSError as ex:
                raise WriteFailed(_refusal(target.path, ex)) from ex
            try:
                if not stat.S_ISREG(os.fstat(fd).st_mode):
                    raise WriteFailed(f"{target.path} is not a regular file")
                os.fchmod(fd, FILE_MODE)
                self.set_owner(target.path, target.user, fd)
            except OSError as ex:
                raise WriteFailed(f"chmod {FILE_MODE:o} {target.path}: {ex.strerror or ex}") from ex
            finally:
                os.close(fd)
        finally:
            os.close(dfd)

    def _create_temp(self, dfd: int, parent: str) -> Tuple[str, int]:
        for _ in range(16):
            name = f".kmagent-{secrets.token_hex(6)}.tmp"
            try:
                fd = os.open(
                    name,
                    os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW,
                    FILE_MODE,
                    dir_fd=dfd,
                )
            except FileExistsError:
                continue
            except OSError as ex:
                raise WriteFailed(f"temp file in {parent}: {ex.strerror or ex}") from ex
            return name, fd
        raise WriteFailed(f"temp file in {parent}: no free name")

    def write(self, target: ManagedFile, content: str) -> None:
        try:
            data = content.encode("utf-8")
        except UnicodeError as ex:
            raise WriteFailed(f"{target.path}: content is not valid UTF-8 ({ex})") from ex

        parent, name = os.path.split(target.path)
        dfd, hold = self._open_parent(parent, target.user, create=True)
        try:
            if hold:
                self._hold_dir(dfd, parent, target.user)
            self._commit(dfd, parent, name, data, target.user)
        finally:
            os.close(dfd)

    def _commit(self, dfd: int, parent: str, name: str, data: bytes, user: ManagedUser) -> None:
        tmp_name, fd = self._create_temp(dfd, parent)
        tmp = os.path.join(parent, tmp_name)
        try:
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                    os.fchmod(f.fileno(), FILE_MODE)
                    self.set_owner(tmp, user, f.fileno())
            except OSError as ex:
                raise WriteFailed(f"{tmp}: {ex.strerror or ex}") from ex
            try:
                os.replace(tmp_name, name, src_dir_fd=dfd, dst_dir_fd=dfd)
            except OSError as ex:
                raise RenameFailed(
                    f"{tmp} -> {os.path.join(parent, name)}: {ex.strerror or ex}"
                ) from ex
        except FileApplyError:
            try:
                os.unlink(tmp_name, dir_fd=dfd)
            except FileNotFoundError:
                pass
            raise

        # Persist the rename itself; failure here does not undo the commit.
        try:
            os.fsync(dfd)
        except OSError:
            pass


# -------------------------
# Reconciliation
# -------------------------


def group_assignments(assignments: Iterable[KeyAssignment]) -> Dict[str, List[KeyAssignment]]:
    by_user: Dict[str, List[KeyAssignment]] = {}
    for a in assignments:
        by_user.setdefault(a.username, []).append(a)
    return by_user


class ReconciliationEngine:
    """Bring every managed file of every managed user to the assigned key set.

    The template list is computed once per run by the caller and passed in,
    so all users see the same sshd_config view.
    """

    def __init__(
        self,
        directory: UserDirectory,
        templates: Sequence[str],
        rep: Reporter,
        *,
        dry_run: bool = False,
        writer: Optional[AtomicFileWriter] = None,
    ) -> None:
        self.directory = directory
        self.templates = list(templates)
        self.rep = rep
        self.dry_run = dry_run
        self.writer = writer or AtomicFileWriter(rep)

    def run(
        self, users: Sequence[ManagedUser], assignments: Sequence[KeyAssignment]
    ) -> RunReport:
        report = RunReport()
        by_user = group_assignments(assignments)

        managed = {u.username for u in users}
        for name in sorted(by_user):
            if name not in managed:
                self.rep.warn(
                    name,
                    "assignments",
                    f"{len(by_user[name])} assignment(s) for an unmanaged user ignored",
                )

        for user in users:
            self.reconcile_user(user, by_user.get(user.username, []), report)
        return report

    def reconcile_user(
        self,
        listed: ManagedUser,
        assignments: Sequence[KeyAssignment],
        report: RunReport,
    ) -> None:
        try:
            user = self.directory.lookup(listed.username)
        except UserNotFound as ex:
            self.rep.warn(listed.username, "user", f"{ex.reason}: {ex}; skipped")
            report.users_skipped += 1
            return
        except KmagentError as ex:
            self.rep.fail(listed.username, "user", f"{ex}; skipped")
            report.users_skipped += 1
            return

        report.users_processed += 1
        if user.disabled:
            # sshd still honors keys for command-only (nologin) accounts
            self.rep.info(
                user.username,
                "user",
                "account disabled (nologin/false shell); keys reconciled anyway",
            )
        desired = self.desired_lines(user, assignments)
        for target in self.discover(user):
            report.outcomes.append(self.reconcile_file(target, desired))

    def discover(self, user: ManagedUser) -> List[ManagedFile]:
        return resolve_targets(self.templates, user, self.rep)

    def desired_lines(
        self, user: ManagedUser, assignments: Sequence[KeyAssignment]
    ) -> List[str]:
        lines: List[str] = []
        seen = set()
        for a in assignments:
            label = a.assignment_id or a.fingerprint or "?"
            try:
                label.encode("utf-8")
            except UnicodeEncodeError:
                label = ascii(label)
            try:
                key = validate_key(a.public_key, a.key_type)
                line = render_key_line(key, a)
            except KeyRejected as ex:
                self.rep.warn(
                    user.username, "key-rejected", f"{ex.reason}: assignment {label}: {ex}"
                )
                continue
            if a.fingerprint.startswith("SHA256:") and a.fingerprint != key.fingerprint:
                self.rep.warn(
                    user.username,
                    "fingerprint",
                    f"assignment {label} declares {a.fingerprint}, key is {key.fingerprint}",
                )
            if (key.key_type, key.payload) in seen:
                self.rep.warn(
                    user.username, "key-duplicate", f"assignment {label}: {key.fingerprint} already assigned"
                )
                continue
            seen.add((key.key_type, key.payload))
            lines.append(line)
        return lines

    def reconcile_file(self, target: ManagedFile, desired: Sequence[str]) -> Outcome:
        outcome = Outcome(target, SKIPPED_NOOP)
        path = target.path
        try:
            text = self.writer.read(target)
            exists = text is not None
            current = parse_key_lines(text) if text is not None else []

            diff = compute_diff(current, desired)
            outcome.added = len(diff.to_add)
            outcome.removed = len(diff.to_remove)
            outcome.unchanged = len(diff.unchanged)

            if diff.empty:
                if exists:
                    self._settle_permissions(target, outcome)
                return outcome

            self._report_diff(target, diff)
            if self.dry_run:
                self.rep.info(
                    path,
                    "dry-run",
                    f"would write {len(desired)} key(s) "
                    f"(+{outcome.added} -{outcome.removed} ={outcome.unchanged})",
                )
                outcome.action = SKIPPED_DRY_RUN
                return outcome

            self.writer.write(target, render_file(desired))
            outcome.action = WRITTEN
            self.rep.info(path, "write", f"{len(desired)} key(s), mode {FILE_MODE:o}")
        except (FileApplyError, OSError) as ex:
            reason = ex.reason if isinstance(ex, FileApplyError) else "ReadFailed"
            outcome.action = ERROR
            outcome.error = f"{reason}: {ex}"
            self.rep.fail(path, "reconcile", outcome.error)
        return outcome

    def _settle_permissions(self, target: ManagedFile, outcome: Outcome) -> None:
        drift = self.writer.inspect(target)
        if not drift:
            return
        if self.dry_run:
            self.rep.info(target.path, "dry-run", "would fix " + "; ".join(drift))
            outcome.action = SKIPPED_DRY_RUN
            return
        self.writer.repair(target)
        self.rep.info(target.path, "permissions", "fixed " + "; ".join(drift))
        outcome.action = WRITTEN
        outcome.permissions_fixed = True

    def _report_diff(self, target: ManagedFile, diff: KeyDiff) -> None:
        verb = "would " if self.dry_run else ""
        for line in diff.to_add:
            self.rep.info(target.path, "key+", f"{verb}add {describe_line(line)}")
        for line in diff.to_remove:
            self.rep.info(target.path, "key-", f"{verb}remove {describe_line(line)}")
