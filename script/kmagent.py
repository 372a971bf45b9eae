#!/usr/bin/env python3
"""
kmagent - reconcile

One batch pass of the key agent: fetch the server's SSH key assignments for
this host and make every authorized_keys file sshd honors for managed users
contain exactly those keys. Meant to be run from a systemd timer or cron;
it does not loop. With --check-update/--update it only looks for (and
installs) a newer kmagent release and exits.

Exit codes:
  0 = reconcile completed (may include warnings)
  2 = failures found (some files could not be reconciled)
  3 = runtime/config error (including: no assignment snapshot)
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import re
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from keyfiles import (
    SSHD_CONFIG_PATH,
    AssignmentSourceError,
    KeyAssignment,
    KmagentError,
    ReconciliationEngine,
    Reporter,
    RunReport,
    UpdateError,
    UserDirectory,
    discover_templates,
)

__version__ = "0.3.0"

DEFAULT_CONFIG_PATH = "/etc/kmagent/config.yml"
RELEASES_URL = "https://api.github.com/repos/ruohki/agent/releases/latest"
USER_AGENT = f"kmagent/{__version__}"

# -------------------------
# Utilities
# -------------------------


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def run(
    cmd: List[str], *, check: bool = False, capture: bool = True, timeout: int = 300
) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd,
        check=check,
        capture_output=capture,
        text=True,
        timeout=timeout,
    )


def load_yaml(path: str) -> Any:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise RuntimeError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-pyyaml)."
        ) from ex

    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"Not found: {p}")
    try:
        return yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as ex:
        raise RuntimeError(f"{p}: invalid YAML/JSON: {ex}") from ex


def load_config(path: Optional[str]) -> Dict[str, Any]:
    # The default config file is optional; an explicit --config is not.
    if path is None:
        if not Path(DEFAULT_CONFIG_PATH).exists():
            return {}
        path = DEFAULT_CONFIG_PATH
    data = load_yaml(path)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RuntimeError("Config root must be a mapping/dict")
    return data


def cfg_get(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def split_names(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [str(x).strip() for x in v if str(x).strip()]


def is_truthy(x: Any) -> bool:
    if isinstance(x, str):
        return x.strip().lower() in ("1", "true", "yes", "on")
    return bool(x) is True


# -------------------------
# Settings
# -------------------------


@dataclasses.dataclass
class Settings:
    endpoint: Optional[str]
    token: Optional[str]
    timeout: int
    dry_run: bool
    include: List[str]
    exclude: List[str]
    sshd_config: str
    passwd_path: Optional[str]
    assignments_path: Optional[str]
    releases_url: str = RELEASES_URL


def build_settings(
    args: argparse.Namespace, cfg: Dict[str, Any], environ: Mapping[str, str]
) -> Settings:
    """Command line beats environment beats config file."""
    include = split_names(getattr(args, "include_users", None)) or split_names(
        cfg_get(cfg, "users.include")
    )
    exclude = split_names(getattr(args, "exclude_users", None)) or split_names(
        cfg_get(cfg, "users.exclude")
    )
    if include and exclude:
        raise RuntimeError("users.include and users.exclude are mutually exclusive")

    return Settings(
        endpoint=getattr(args, "endpoint", None)
        or environ.get("KMAGENT_ENDPOINT")
        or cfg_get(cfg, "agent.endpoint"),
        token=getattr(args, "token", None)
        or environ.get("KMAGENT_TOKEN")
        or cfg_get(cfg, "agent.token"),
        timeout=int(cfg_get(cfg, "agent.timeout_seconds", 15)),
        dry_run=bool(getattr(args, "dry_run", False))
        or is_truthy(cfg_get(cfg, "agent.dry_run", False)),
        include=include,
        exclude=exclude,
        sshd_config=getattr(args, "sshd_config", None)
        or cfg_get(cfg, "sshd.config_path", SSHD_CONFIG_PATH),
        passwd_path=getattr(args, "passwd", None) or cfg_get(cfg, "identity.passwd_path"),
        assignments_path=getattr(args, "assignments", None),
        releases_url=cfg_get(cfg, "update.releases_url", RELEASES_URL),
    )


# -------------------------
# Assignment source
# -------------------------


def unwrap_assignments(body: Any, source: str) -> List[Any]:
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        raise AssignmentSourceError(f"{source}: expected an object or a list of assignments")
    if body.get("success") is False:
        raise AssignmentSourceError(f"{source}: {body.get('error') or 'request not successful'}")
    records = body.get("assignments") or []
    if not isinstance(records, list):
        raise AssignmentSourceError(f"{source}: 'assignments' must be a list")
    return records


def fetch_assignments(endpoint: str, token: str, *, timeout: int = 15) -> List[Any]:
    url = endpoint.rstrip("/") + "/api/host/keys"
    headers = {
        "Authorization": f"Bearer {token}",
        "User-Agent": USER_AGENT,
    }
    try:
        res = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as ex:
        raise AssignmentSourceError(f"GET {url}: {ex}") from ex

    try:
        body = res.json()
    except ValueError:
        body = None

    if not res.ok:
        msg = body.get("error") if isinstance(body, dict) else None
        raise AssignmentSourceError(
            f"GET {url}: HTTP {res.status_code}: {msg or res.text[:200]}"
        )
    if body is None:
        raise AssignmentSourceError(f"GET {url}: response is not JSON")
    return unwrap_assignments(body, url)


def load_assignments(path: str) -> List[Any]:
    # yaml.safe_load reads JSON snapshots too
    try:
        body = load_yaml(path)
    except RuntimeError as ex:
        raise AssignmentSourceError(str(ex)) from ex
    return unwrap_assignments(body, path)


def parse_assignments(records: List[Any], rep: Reporter) -> List[KeyAssignment]:
    out: List[KeyAssignment] = []
    for i, rec in enumerate(records):
        try:
            out.append(KeyAssignment.from_dict(rec))
        except ValueError as ex:
            rep.warn("assignments", "assignment-parse", f"record #{i}: {ex}")
    return out


# -------------------------
# Server health
# -------------------------


def check_health(endpoint: str, rep: Reporter, *, timeout: int = 15) -> bool:
    """GET {endpoint}/api/health. A failed check is only a warning."""
    url = endpoint.rstrip("/") + "/api/health"
    try:
        res = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    except requests.RequestException as ex:
        rep.warn("agent", "health", f"GET {url}: {ex}; continuing")
        return False
    if not res.ok:
        rep.warn("agent", "health", f"GET {url}: HTTP {res.status_code}; continuing")
        return False
    rep.info("agent", "health", f"GET {url}: ok")
    return True


# -------------------------
# Self-update
# -------------------------

_RELEASE_TAG_RE = re.compile(r"^v?\d+(\.\d+)*$")


def version_parts(version: str) -> Tuple[int, ...]:
    v = version.strip()
    if v.startswith("v"):
        v = v[1:]
    return tuple(int(p) for p in v.split(".") if p.isdigit())


def is_newer_version(current: str, latest: str) -> bool:
    cur, new = version_parts(current), version_parts(latest)
    width = max(len(cur), len(new))
    return new + (0,) * (width - len(new)) > cur + (0,) * (width - len(cur))


def get_latest_release(url: str, *, timeout: int = 15) -> Dict[str, Any]:
    headers = {
        "Accept": "application/vnd.github.v3+json",
        "User-Agent": USER_AGENT,
    }
    try:
        res = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as ex:
        raise UpdateError(f"GET {url}: {ex}") from ex
    if not res.ok:
        raise UpdateError(f"GET {url}: HTTP {res.status_code}")
    try:
        release = res.json()
    except ValueError as ex:
        raise UpdateError(f"GET {url}: response is not JSON") from ex
    if not isinstance(release, dict) or not release.get("tag_name"):
        raise UpdateError(f"GET {url}: release has no tag_name")
    return release


def find_release_asset(release: Dict[str, Any]) -> Dict[str, Any]:
    """Pick the wheel built for this project out of a release's assets."""
    tag = str(release["tag_name"])
    if not _RELEASE_TAG_RE.match(tag):
        raise UpdateError(f"release tag {tag!r} is not a version")
    want = f"kmagent-{tag.lstrip('v')}-py3-none-any.whl"
    for asset in release.get("assets") or []:
        if isinstance(asset, dict) and asset.get("name") == want:
            return asset
    raise UpdateError(f"release {tag} has no asset {want}")


def download_and_install(asset: Dict[str, Any], *, dry_run: bool, timeout: int = 60) -> None:
    name = asset["name"]
    url = asset.get("browser_download_url") or ""
    if dry_run:
        print(f"DRY RUN: would download {name} from {url}")
        print(f"DRY RUN: would install it with {sys.executable} -m pip")
        return

    try:
        res = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    except requests.RequestException as ex:
        raise UpdateError(f"download {name}: {ex}") from ex
    if not res.ok:
        raise UpdateError(f"download {name}: HTTP {res.status_code}")
    data = res.content
    size = asset.get("size")
    if size is not None and len(data) != int(size):
        raise UpdateError(f"download {name}: expected {size} bytes, got {len(data)}")

    with tempfile.TemporaryDirectory(prefix="kmagent-update-") as tmp:
        wheel = os.path.join(tmp, name)
        with open(wheel, "wb") as f:
            f.write(data)
        try:
            cp = run([sys.executable, "-m", "pip", "install", "--upgrade", wheel])
        except (OSError, subprocess.SubprocessError) as ex:
            raise UpdateError(f"pip install {name}: {ex}") from ex
    if cp.returncode != 0:
        out = (cp.stderr or cp.stdout or "").strip()
        raise UpdateError(f"pip install {name} failed (rc={cp.returncode}): {out[-400:]}")
    print(f"Update installed: {name}")


def check_and_update(
    current: str, *, url: str, install: bool, dry_run: bool, timeout: int = 15
) -> bool:
    """Compare against the latest release; install it when asked.

    Returns True when a newer version was installed.
    """
    release = get_latest_release(url, timeout=timeout)
    tag = str(release["tag_name"])
    if release.get("draft") or release.get("prerelease"):
        print(f"Latest release {tag} is a draft or prerelease, skipping.")
        return False

    print(f"Current version: {current}")
    print(f"Latest version: {tag}")
    if not is_newer_version(current, tag):
        print("You are running the latest version.")
        return False

    print(f"Update available: {current} -> {tag}")
    if not install:
        print("Use --update to install the update")
        return False
    asset = find_release_asset(release)
    print(f"Found release asset: {asset['name']} ({asset.get('size', '?')} bytes)")
    download_and_install(asset, dry_run=dry_run)
    return not dry_run


# -------------------------
# Main
# -------------------------


def print_summary(result: RunReport, rep: Reporter, dry_run: bool) -> None:
    i, w, f = rep.summarize()
    mode = " (dry-run)" if dry_run else ""
    print(
        f"\nSummary{mode}: users={result.users_processed} "
        f"skipped={result.users_skipped} files_written={result.files_written} "
        f"keys_added={result.keys_added} keys_removed={result.keys_removed} "
        f"errors={result.errors}"
    )
    print(f"Findings: INFO={i} WARN={w} FAIL={f}")


def add_common_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument(
        "--config", help=f"Path to agent config YAML (default {DEFAULT_CONFIG_PATH})"
    )
    ap.add_argument("--sshd-config", help=f"sshd config to read (default {SSHD_CONFIG_PATH})")
    ap.add_argument("--passwd", help="Read identities from this passwd-format file")
    ap.add_argument("--include-users", help="Comma-separated usernames to manage")
    ap.add_argument("--exclude-users", help="Comma-separated usernames never to manage")
    ap.add_argument("--verbose", action="store_true", help="Also print passing checks")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="kmagent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Reconcile authorized_keys files against server key assignments.",
        epilog=textwrap.dedent("""\
        Examples:
          kmagent --endpoint https://keys.example.net --token "$TOKEN"
          kmagent --config /etc/kmagent/config.yml --dry-run
          kmagent --assignments snapshot.json --include-users alice,bob
          kmagent --check-update
          kmagent --update --dry-run
        """),
    )
    add_common_args(ap)
    ap.add_argument("--endpoint", help="Server base URL (or KMAGENT_ENDPOINT)")
    ap.add_argument("--token", help="API token (or KMAGENT_TOKEN)")
    ap.add_argument(
        "--assignments", help="Read assignments from a local JSON/YAML snapshot"
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not change anything; print intended actions",
    )
    ap.add_argument(
        "--check-update",
        action="store_true",
        help="Report whether a newer kmagent release exists, then exit",
    )
    ap.add_argument(
        "--update",
        action="store_true",
        help="Install the newest kmagent release if it is newer, then exit",
    )
    ap.add_argument("--version", action="version", version=f"kmagent {__version__}")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
        settings = build_settings(args, cfg, os.environ)
    except (RuntimeError, ValueError) as ex:
        eprint(f"ERROR: {ex}")
        return 3

    if args.check_update or args.update:
        try:
            check_and_update(
                __version__,
                url=settings.releases_url,
                install=args.update,
                dry_run=settings.dry_run,
                timeout=settings.timeout,
            )
        except UpdateError as ex:
            eprint(f"ERROR: update failed: {ex}")
            return 3
        return 0

    rep = Reporter()
    directory = UserDirectory(settings.passwd_path)
    try:
        users = directory.list_managed(settings.include, settings.exclude)
    except KmagentError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    try:
        if settings.assignments_path:
            records = load_assignments(settings.assignments_path)
        elif settings.endpoint and settings.token:
            check_health(settings.endpoint, rep, timeout=settings.timeout)
            records = fetch_assignments(
                settings.endpoint, settings.token, timeout=settings.timeout
            )
        else:
            eprint("ERROR: need --endpoint and --token (or --assignments)")
            return 3
    except AssignmentSourceError as ex:
        eprint(f"ERROR: cannot obtain key assignments: {ex}")
        return 3

    assignments = parse_assignments(records, rep)
    rep.info(
        "agent",
        "snapshot",
        f"{len(assignments)} assignment(s), {len(users)} managed user(s)",
    )

    templates = discover_templates(settings.sshd_config, rep)
    engine = ReconciliationEngine(directory, templates, rep, dry_run=settings.dry_run)
    result = engine.run(users, assignments)

    rep.print(verbose=args.verbose)
    print_summary(result, rep, settings.dry_run)
    return 2 if result.errors > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
