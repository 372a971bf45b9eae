import base64
import hashlib
import os

import pytest

from keyfiles import ManagedUser, Reporter


def make_key(seed, key_type="ssh-ed25519", comment=""):
    """Build a well-formed public key line; the payload is derived from seed."""
    name = key_type.encode()
    blob = len(name).to_bytes(4, "big") + name + b"\x00\x00\x00\x20"
    blob += hashlib.sha256(seed.encode()).digest()
    line = f"{key_type} {base64.b64encode(blob).decode()}"
    return f"{line} {comment}" if comment else line


def write_passwd(path, users):
    lines = [
        f"{u.username}:x:{u.uid}:{u.gid}:{u.username}:{u.home}:{u.shell}" for u in users
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def snapshot(root):
    state = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            p = os.path.join(dirpath, name)
            st = os.lstat(p)
            data = None
            if os.path.isfile(p):
                with open(p, "rb") as f:
                    data = f.read()
            state[os.path.relpath(p, root)] = (st.st_mode, st.st_uid, data)
    return state


@pytest.fixture
def rep():
    return Reporter()


@pytest.fixture
def make_user(tmp_path):
    def _make(name="alice", create_home=True):
        home = tmp_path / "home" / name
        if create_home:
            home.mkdir(parents=True, exist_ok=True)
        return ManagedUser(name, os.getuid(), os.getgid(), str(home))

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice")
