"""
Backup/rollback store: versioned file snapshots taken before a fix runs.

Snapshots are immutable. Each one keeps its payload in memory and is also
mirrored to disk under the store root so an operator can recover a file by
hand if the process dies mid-session:

    <root>/<encoded path>/<ref>.bak

Snapshots of the same path are never overwritten; every capture gets a new
ref and restores happen most-recent-first. Pruning is the caller's call.
"""

from __future__ import annotations

import itertools
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from vpsaudit.errors import RestoreTargetMissingError

logger = logging.getLogger("vpsaudit.fixer.backup")


@dataclass(frozen=True)
class Snapshot:
    path: str
    captured_at: str            # ISO-8601 UTC
    payload: bytes | None       # None when the file did not exist
    existed: bool
    mode: int | None
    ref: str                    # "20260101T120000.123456Z-0003"
    link_target: str | None = None   # set when path was a symlink


class BackupStore:
    """Capture and restore point-in-time copies of files."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._seq = itertools.count(1)

    # ── Public API ────────────────────────────────────────────────────────────

    def snapshot(self, path: str | Path) -> Snapshot:
        """
        Capture the current content of path.

        A missing file is captured too (existed=False) so that restoring
        the snapshot removes whatever the fix created. A symlink is captured
        as the link itself, not the file it points at.
        """
        target = Path(path)
        now = datetime.now(timezone.utc)
        ref = f"{now.strftime('%Y%m%dT%H%M%S.%fZ')}-{next(self._seq):04d}"

        if target.is_symlink():
            snap = Snapshot(
                path=str(target),
                captured_at=now.isoformat(),
                payload=None,
                existed=True,
                mode=None,
                ref=ref,
                link_target=os.readlink(target),
            )
        elif target.exists():
            payload = target.read_bytes()
            snap = Snapshot(
                path=str(target),
                captured_at=now.isoformat(),
                payload=payload,
                existed=True,
                mode=stat.S_IMODE(target.stat().st_mode),
                ref=ref,
            )
        else:
            snap = Snapshot(
                path=str(target),
                captured_at=now.isoformat(),
                payload=None,
                existed=False,
                mode=None,
                ref=ref,
            )

        self._persist(snap)
        logger.debug("Snapshot %s of %s (existed=%s)", ref, snap.path, snap.existed)
        return snap

    def restore(self, snap: Snapshot) -> None:
        """
        Put snap's content back at its path.

        Idempotent. Raises RestoreTargetMissingError when the parent
        directory of a file that existed is gone; PermissionError
        propagates unchanged.
        """
        target = Path(snap.path)
        parent = target.parent

        if not snap.existed:
            try:
                target.unlink()
            except FileNotFoundError:
                # also covers a parent directory that is gone
                pass
            logger.info("Restored %s (removed, did not exist before)", snap.path)
            return

        if not parent.is_dir():
            raise RestoreTargetMissingError(snap.path)

        if snap.link_target is not None:
            self._restore_link(snap)
            return

        # Write beside the target, then rename over it.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(snap.payload or b"")
            if snap.mode is not None:
                os.chmod(tmp_name, snap.mode)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        logger.info("Restored %s from snapshot %s", snap.path, snap.ref)

    def restore_all(self, snapshots: Iterable[Snapshot]) -> None:
        """Restore several snapshots, latest capture first."""
        for snap in sorted(snapshots, key=lambda s: s.ref, reverse=True):
            self.restore(snap)

    def prune(self, keep: int) -> int:
        """
        Keep only the newest `keep` on-disk snapshots per path.

        Returns the number of files removed. In-memory snapshots of the
        current session are left alone.
        """
        removed = 0
        try:
            dirs = [d for d in self.root.iterdir() if d.is_dir()]
        except OSError:
            return 0

        for d in dirs:
            files = sorted(d.glob("*.bak"))
            for old in files[:-keep] if keep > 0 else files:
                try:
                    old.unlink()
                    removed += 1
                except OSError:
                    pass
        return removed

    # ── Internal ──────────────────────────────────────────────────────────────

    def _restore_link(self, snap: Snapshot) -> None:
        """Recreate a symlink beside the target, then rename it over."""
        target = Path(snap.path)
        tmp = target.with_name(f".{target.name}.{snap.ref}.link")
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        os.symlink(snap.link_target, tmp)
        try:
            os.replace(tmp, target)
        except BaseException:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise
        logger.info("Restored symlink %s -> %s from snapshot %s", snap.path, snap.link_target, snap.ref)

    def _persist(self, snap: Snapshot) -> None:
        """Mirror a file snapshot to disk. Failure is logged, never fatal."""
        if not snap.existed or snap.link_target is not None:
            return
        slot = self.root / _encode_path(snap.path)
        try:
            slot.mkdir(parents=True, exist_ok=True)
            (slot / f"{snap.ref}.bak").write_bytes(snap.payload or b"")
        except OSError as e:
            logger.warning("Could not mirror snapshot of %s to %s: %s", snap.path, slot, e)


def _encode_path(path: str) -> str:
    """'/etc/ufw/ufw.conf' → 'etc__ufw__ufw.conf'"""
    return path.strip("/").replace("/", "__") or "_root"
