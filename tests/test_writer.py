import os
import stat

import pytest

import keyfiles
from keyfiles import (
    AtomicFileWriter,
    DirectoryCreateFailed,
    ManagedFile,
    ManagedUser,
    ReadFailed,
    RenameFailed,
    WriteFailed,
)


def mode_of(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_write_creates_private_directory(alice, rep):
    target = ManagedFile(os.path.join(alice.home, ".ssh", "authorized_keys"), alice)
    AtomicFileWriter(rep).write(target, "content\n")
    assert open(target.path).read() == "content\n"
    assert mode_of(target.path) == 0o600
    assert mode_of(os.path.dirname(target.path)) == 0o700
    assert rep.count("WARN") == 0


def test_permission_floor_tightens_existing_directory(alice, rep):
    ssh_dir = os.path.join(alice.home, ".ssh")
    os.mkdir(ssh_dir)
    os.chmod(ssh_dir, 0o755)
    path = os.path.join(ssh_dir, "authorized_keys")
    with open(path, "w") as f:
        f.write("old\n")
    os.chmod(path, 0o644)

    AtomicFileWriter(rep).write(ManagedFile(path, alice), "new\n")
    assert mode_of(ssh_dir) == 0o700
    assert mode_of(path) == 0o600
    assert open(path).read() == "new\n"


def test_shared_directory_outside_home_left_alone(tmp_path, alice, rep):
    shared = tmp_path / "etc-keys"
    shared.mkdir()
    os.chmod(shared, 0o755)
    path = str(shared / "alice")
    AtomicFileWriter(rep).write(ManagedFile(path, alice), "k\n")
    assert mode_of(str(shared)) == 0o755
    assert mode_of(path) == 0o600


def test_rename_failure_leaves_original_untouched(alice, rep, monkeypatch):
    ssh_dir = os.path.join(alice.home, ".ssh")
    os.mkdir(ssh_dir, 0o700)
    path = os.path.join(ssh_dir, "authorized_keys")
    with open(path, "wb") as f:
        f.write(b"original bytes\n")

    def boom(src, dst, **kw):
        raise OSError(30, "Read-only file system")

    monkeypatch.setattr(keyfiles.os, "replace", boom)
    with pytest.raises(RenameFailed):
        AtomicFileWriter(rep).write(ManagedFile(path, alice), "replacement\n")

    with open(path, "rb") as f:
        assert f.read() == b"original bytes\n"
    assert os.listdir(ssh_dir) == ["authorized_keys"]


def test_write_failure_cleans_temp_file(alice, rep, monkeypatch):
    ssh_dir = os.path.join(alice.home, ".ssh")
    os.mkdir(ssh_dir, 0o700)

    def no_space(fd):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(keyfiles.os, "fsync", no_space)
    with pytest.raises(WriteFailed):
        AtomicFileWriter(rep).write(
            ManagedFile(os.path.join(ssh_dir, "authorized_keys"), alice), "x\n"
        )
    assert os.listdir(ssh_dir) == []


def test_unprivileged_ownership_is_degraded_not_fatal(tmp_path, rep):
    other = ManagedUser("bob", os.geteuid() + 1, os.getegid(), str(tmp_path / "bob"))
    os.mkdir(other.home)
    target = ManagedFile(os.path.join(other.home, ".ssh", "authorized_keys"), other)

    AtomicFileWriter(rep, privileged=False).write(target, "k\n")
    assert open(target.path).read() == "k\n"
    assert mode_of(target.path) == 0o600
    warns = [x for x in rep.items if x.severity == "WARN"]
    assert warns and all("OwnershipDenied" in w.details for w in warns)


def test_inspect_and_repair(alice, rep):
    writer = AtomicFileWriter(rep)
    target = ManagedFile(os.path.join(alice.home, ".ssh", "authorized_keys"), alice)
    writer.write(target, "k\n")
    assert writer.inspect(target) == []

    os.chmod(target.path, 0o664)
    os.chmod(os.path.dirname(target.path), 0o775)
    assert len(writer.inspect(target)) == 2

    writer.repair(target)
    assert writer.inspect(target) == []
    assert open(target.path).read() == "k\n"


def test_symlinked_key_directory_is_refused(tmp_path, alice, rep):
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    os.chmod(elsewhere, 0o755)
    os.symlink(str(elsewhere), os.path.join(alice.home, ".ssh"))
    target = ManagedFile(os.path.join(alice.home, ".ssh", "authorized_keys"), alice)

    with pytest.raises(WriteFailed):
        AtomicFileWriter(rep).write(target, "k\n")
    assert mode_of(str(elsewhere)) == 0o755
    assert os.listdir(elsewhere) == []


def test_symlinked_key_file_is_neither_read_nor_repaired(tmp_path, alice, rep):
    victim = tmp_path / "victim"
    victim.write_text("secret\n")
    os.chmod(victim, 0o644)
    ssh_dir = os.path.join(alice.home, ".ssh")
    os.mkdir(ssh_dir, 0o700)
    path = os.path.join(ssh_dir, "authorized_keys")
    os.symlink(str(victim), path)
    writer = AtomicFileWriter(rep)
    target = ManagedFile(path, alice)

    assert any("symlink" in d for d in writer.inspect(target))
    with pytest.raises(ReadFailed):
        writer.read(target)
    with pytest.raises(WriteFailed):
        writer.repair(target)
    assert mode_of(str(victim)) == 0o644
    assert victim.read_text() == "secret\n"


def test_read_of_absent_file_changes_nothing(alice, rep):
    target = ManagedFile(os.path.join(alice.home, ".ssh", "authorized_keys"), alice)
    assert AtomicFileWriter(rep).read(target) is None
    assert os.listdir(alice.home) == []


def test_unencodable_content_leaves_no_temp_file(alice, rep):
    ssh_dir = os.path.join(alice.home, ".ssh")
    os.mkdir(ssh_dir, 0o700)
    with pytest.raises(WriteFailed):
        AtomicFileWriter(rep).write(
            ManagedFile(os.path.join(ssh_dir, "authorized_keys"), alice), "k x\ud800\n"
        )
    assert os.listdir(ssh_dir) == []


def test_missing_home_is_not_created(make_user, rep):
    ghost = make_user("ghost", create_home=False)
    target = ManagedFile(os.path.join(ghost.home, ".ssh", "authorized_keys"), ghost)
    with pytest.raises(DirectoryCreateFailed):
        AtomicFileWriter(rep).write(target, "k\n")
    assert not os.path.exists(ghost.home)


def test_nested_key_directories_are_created_private(alice, rep):
    target = ManagedFile(os.path.join(alice.home, ".config", "ssh", "keys"), alice)
    AtomicFileWriter(rep).write(target, "k\n")
    assert mode_of(os.path.join(alice.home, ".config")) == 0o700
    assert mode_of(os.path.dirname(target.path)) == 0o700
    assert open(target.path).read() == "k\n"
