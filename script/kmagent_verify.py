#!/usr/bin/env python3
"""
kmagent - verify

Read-only audit of the authorized_keys files kmagent manages on this host.
Checks modes, ownership, the managed header and the shape of every key
line. Never modifies anything; safe to run as an unprivileged user (files
it cannot read are reported as failures).

Exit codes:
  0 = all checks passed (or only warnings)
  2 = drift detected / failures found
  3 = runtime error (bad config, unreadable identity store, etc.)
"""

from __future__ import annotations

import argparse
import os
import stat
import sys
import textwrap
from typing import List, Optional

from keyfiles import (
    DIR_MODE,
    FILE_MODE,
    KeyRejected,
    ManagedFile,
    Reporter,
    UserDirectory,
    discover_templates,
    has_managed_header,
    inside_home,
    parse_key_lines,
    resolve_targets,
    validate_key,
)
from kmagent import add_common_args, build_settings, eprint, load_config

# -------------------------
# Checks
# -------------------------


def check_mode(path: str, want_mode: int, rep: Reporter, label: str) -> bool:
    mode = stat.S_IMODE(os.stat(path).st_mode)
    if mode != want_mode:
        rep.fail(path, label, f"mode {mode:o} != {want_mode:o}")
        return False
    rep.passed(path, label, f"mode {mode:o}")
    return True


def check_owner(path: str, uid: int, rep: Reporter, label: str) -> bool:
    st = os.stat(path)
    if st.st_uid != uid:
        rep.fail(path, label, f"owner uid {st.st_uid} != {uid}")
        return False
    rep.passed(path, label, f"owner uid {uid}")
    return True


def check_key_lines(path: str, content: str, rep: Reporter) -> None:
    if has_managed_header(content):
        rep.passed(path, "managed-header", "present")
    else:
        rep.warn(path, "managed-header", "missing (file not yet taken over by kmagent)")

    lines = parse_key_lines(content)
    bad = 0
    for n, line in enumerate(lines, 1):
        try:
            validate_key(line)
        except KeyRejected as ex:
            bad += 1
            rep.warn(path, "key-line", f"entry {n}: {ex.reason}: {ex}")
    if not bad:
        rep.passed(path, "key-line", f"{len(lines)} well-formed entr{'y' if len(lines) == 1 else 'ies'}")


def verify_file(target: ManagedFile, rep: Reporter) -> None:
    path = target.path
    if not os.path.lexists(path):
        rep.passed(path, "file", "absent")
        return
    if os.path.islink(path) or not os.path.isfile(path):
        rep.fail(path, "file", "not a regular file")
        return

    parent = os.path.dirname(path)
    if inside_home(parent, target.user.home):
        if os.path.islink(parent):
            rep.fail(parent, "dir", "is a symlink (kmagent refuses to write through it)")
            return
        check_mode(parent, DIR_MODE, rep, "dir-mode")
        check_owner(parent, target.user.uid, rep, "dir-owner")
    check_mode(path, FILE_MODE, rep, "file-mode")
    check_owner(path, target.user.uid, rep, "file-owner")

    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
    except OSError as ex:
        rep.fail(path, "read", f"unreadable: {ex.strerror or ex}")
        return
    check_key_lines(path, content, rep)


# -------------------------
# Main
# -------------------------


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="kmagent-verify",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Audit kmagent-managed authorized_keys files without changing them.",
        epilog=textwrap.dedent("""\
        Examples:
          kmagent-verify
          kmagent-verify --include-users alice --verbose
        """),
    )
    add_common_args(ap)
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
        settings = build_settings(args, cfg, os.environ)
        directory = UserDirectory(settings.passwd_path)
        users = directory.list_managed(settings.include, settings.exclude)
    except (RuntimeError, ValueError) as ex:
        eprint(f"ERROR: {ex}")
        return 3

    rep = Reporter()
    templates = discover_templates(settings.sshd_config, rep)
    for user in users:
        for target in resolve_targets(templates, user, rep):
            try:
                verify_file(target, rep)
            except OSError as ex:
                rep.fail(target.path, "stat", f"{ex.strerror or ex}")

    rep.print(verbose=args.verbose)
    p = rep.count("PASS")
    w = rep.count("WARN")
    f = rep.count("FAIL")
    print(f"\nSummary: PASS={p} WARN={w} FAIL={f}")
    return 2 if f > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
