"""
Tests for fixer/backup.py.

Covers snapshot → restore round trip, idempotent restore, missing-file
snapshots, missing parent directory, on-disk mirror and pruning.
"""

import os

import pytest

from vpsaudit.errors import RestoreTargetMissingError
from vpsaudit.fixer.backup import BackupStore, _encode_path


class TestSnapshotRestore:
    def test_round_trip_is_byte_identical(self, tmp_path):
        target = tmp_path / "daemon.json"
        original = b'{"live-restore": false}\n\x00\xff'
        target.write_bytes(original)
        store = BackupStore(tmp_path / "backups")

        snap = store.snapshot(target)
        target.write_bytes(b"changed")
        store.restore(snap)

        assert target.read_bytes() == original

    def test_restore_is_idempotent(self, tmp_path):
        target = tmp_path / "ufw.conf"
        target.write_text("ENABLED=no\n")
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)

        target.write_text("ENABLED=yes\n")
        store.restore(snap)
        store.restore(snap)

        assert target.read_text() == "ENABLED=no\n"

    def test_restore_preserves_mode(self, tmp_path):
        target = tmp_path / "secret.conf"
        target.write_text("x")
        target.chmod(0o600)
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)

        target.unlink()
        store.restore(snap)

        assert (target.stat().st_mode & 0o777) == 0o600

    def test_snapshot_of_missing_file_deletes_on_restore(self, tmp_path):
        target = tmp_path / "99-catchall.conf"
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)
        assert snap.existed is False

        target.write_text("server {}")
        store.restore(snap)
        assert not target.exists()

        # still fine when there is nothing to delete
        store.restore(snap)

    def test_symlink_is_restored_as_a_link(self, tmp_path):
        available = tmp_path / "sites-available" / "default"
        available.parent.mkdir()
        available.write_text("server { listen 80; }\n")
        link = tmp_path / "default"
        link.symlink_to(available)
        store = BackupStore(tmp_path / "backups")

        snap = store.snapshot(link)
        assert snap.link_target == str(available)

        link.unlink()
        link.write_text("server { return 444; }\n")
        store.restore(snap)

        assert link.is_symlink()
        assert link.resolve() == available.resolve()
        assert available.read_text() == "server { listen 80; }\n"

    def test_dangling_symlink_round_trip(self, tmp_path):
        link = tmp_path / "99-catchall"
        link.symlink_to("/nonexistent/99-catchall.conf")
        store = BackupStore(tmp_path / "backups")

        snap = store.snapshot(link)
        assert snap.existed

        link.unlink()
        store.restore(snap)
        assert link.is_symlink()
        assert os.readlink(link) == "/nonexistent/99-catchall.conf"

    def test_missing_file_with_missing_parent_restores_cleanly(self, tmp_path):
        target = tmp_path / "ssl" / "default.key"
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)

        store.restore(snap)
        assert not target.parent.exists()

    def test_missing_parent_raises(self, tmp_path):
        conf_dir = tmp_path / "etc"
        conf_dir.mkdir()
        target = conf_dir / "app.conf"
        target.write_text("x")
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)

        target.unlink()
        conf_dir.rmdir()

        with pytest.raises(RestoreTargetMissingError):
            store.restore(snap)

    def test_restore_all_applies_latest_capture_first(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("v1")
        store = BackupStore(tmp_path / "backups")
        first = store.snapshot(target)
        target.write_text("v2")
        second = store.snapshot(target)
        target.write_text("v3")

        store.restore_all([first, second])

        # the earliest snapshot is restored last and wins
        assert target.read_text() == "v1"


class TestSnapshotHistory:
    def test_snapshots_are_never_overwritten(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("a")
        store = BackupStore(tmp_path / "backups")
        first = store.snapshot(target)
        target.write_text("b")
        second = store.snapshot(target)

        assert first.ref != second.ref
        assert (first.payload, second.payload) == (b"a", b"b")
        slot = tmp_path / "backups" / _encode_path(str(target))
        assert len(list(slot.glob("*.bak"))) == 2

    def test_snapshot_is_mirrored_to_disk(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("payload")
        store = BackupStore(tmp_path / "backups")
        snap = store.snapshot(target)

        mirrored = tmp_path / "backups" / _encode_path(str(target)) / f"{snap.ref}.bak"
        assert mirrored.read_text() == "payload"

    def test_prune_keeps_newest(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("x")
        store = BackupStore(tmp_path / "backups")
        for _ in range(5):
            store.snapshot(target)

        removed = store.prune(keep=2)

        slot = tmp_path / "backups" / _encode_path(str(target))
        assert removed == 3
        assert len(list(slot.glob("*.bak"))) == 2

    def test_prune_without_root_is_noop(self, tmp_path):
        assert BackupStore(tmp_path / "never-created").prune(keep=1) == 0

    def test_encode_path(self):
        assert _encode_path("/etc/ufw/ufw.conf") == "etc__ufw__ufw.conf"
        assert _encode_path("/") == "_root"
