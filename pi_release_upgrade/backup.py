"""Snapshot and restore of the apt repository configuration.

A backup is a plain directory under ``/var/backups`` named after the moment
it was taken::

    /var/backups/apt-sources-2025-06-15-103000/
        sources.list
        sources.list.d/...
        manifest.json

Nothing is ever deleted from there automatically; the operator can restore
from any of them with ``pi-release-upgrade restore <dir>``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import filecmp
import json
import logging
import shutil
from pathlib import Path
from typing import Callable, List

from .config import BACKUP_PREFIX, TIMESTAMP_FORMAT
from .errors import BackupError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
ROOT_FILE_NAME = "sources.list"
DROP_IN_NAME = "sources.list.d"


@dataclass(frozen=True)
class Backup:
    identifier: str
    path: Path
    root_file: Path
    drop_in_dir: Path
    drop_in_copied: bool = True

    @property
    def root_copy(self) -> Path:
        return self.path / ROOT_FILE_NAME

    @property
    def drop_in_copy(self) -> Path:
        return self.path / DROP_IN_NAME

    def write_manifest(self, created: datetime) -> None:
        manifest = {
            "identifier": self.identifier,
            "created": created.isoformat(timespec="seconds"),
            "root_file": str(self.root_file),
            "drop_in_dir": str(self.drop_in_dir),
            "drop_in_copied": self.drop_in_copied,
        }
        (self.path / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2) + "\n")

    @classmethod
    def load(cls, path: Path) -> "Backup":
        """Reopen a backup directory created by :meth:`RepoConfigStore.snapshot`."""

        manifest_path = path / MANIFEST_NAME
        try:
            manifest = json.loads(manifest_path.read_text())
        except (OSError, ValueError) as exc:
            raise BackupError(f"{path} is not a usable backup: {exc}") from exc
        return cls(
            identifier=manifest.get("identifier", path.name[len(BACKUP_PREFIX):]),
            path=path,
            root_file=Path(manifest["root_file"]),
            drop_in_dir=Path(manifest["drop_in_dir"]),
            drop_in_copied=bool(manifest.get("drop_in_copied", True)),
        )


@dataclass
class RestoreReport:
    backup: Backup
    root_restored: bool = False
    drop_in_restored: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.root_restored and self.drop_in_restored and not self.errors


class RepoConfigStore:
    """Owns the repository configuration locations and their backups."""

    def __init__(
        self,
        root_file: Path,
        drop_in_dir: Path,
        backup_root: Path,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.root_file = root_file
        self.drop_in_dir = drop_in_dir
        self.backup_root = backup_root
        self._clock = clock

    def _fresh_backup_dir(self, now: datetime) -> tuple[str, Path]:
        identifier = now.strftime(TIMESTAMP_FORMAT)
        candidate = self.backup_root / f"{BACKUP_PREFIX}{identifier}"
        counter = 1
        while candidate.exists():
            candidate = self.backup_root / f"{BACKUP_PREFIX}{identifier}-{counter}"
            counter += 1
        return candidate.name[len(BACKUP_PREFIX):], candidate

    def snapshot(self) -> Backup:
        """Copy the root file and the drop-in directory into a new backup.

        Raises
        ------
        BackupError
            If the backup directory cannot be created or the root file cannot
            be copied and verified.  A failed drop-in copy is only logged.
        """

        now = self._clock()
        identifier, path = self._fresh_backup_dir(now)
        logger.info("Backing up apt sources to %s", path)
        try:
            path.mkdir(parents=True)
        except OSError as exc:
            raise BackupError(f"Could not create backup directory {path}: {exc}") from exc

        root_copy = path / ROOT_FILE_NAME
        try:
            shutil.copy2(self.root_file, root_copy)
            verified = filecmp.cmp(self.root_file, root_copy, shallow=False)
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise BackupError(
                f"Could not copy {self.root_file}; refusing to continue without a backup: {exc}"
            ) from exc
        if not verified:
            shutil.rmtree(path, ignore_errors=True)
            raise BackupError(f"Backup copy of {self.root_file} does not match the original")

        drop_in_copied = True
        if self.drop_in_dir.is_dir():
            try:
                shutil.copytree(self.drop_in_dir, path / DROP_IN_NAME, symlinks=True)
                logger.info("Backed up %s", self.drop_in_dir)
            except (OSError, shutil.Error) as exc:
                drop_in_copied = False
                logger.error(
                    "Failed to copy %s (%s); continuing, but review the backup manually.",
                    self.drop_in_dir,
                    exc,
                )
        else:
            logger.info("%s does not exist; nothing to copy", self.drop_in_dir)

        backup = Backup(
            identifier=identifier,
            path=path,
            root_file=self.root_file,
            drop_in_dir=self.drop_in_dir,
            drop_in_copied=drop_in_copied,
        )
        try:
            backup.write_manifest(created=now)
        except OSError as exc:
            logger.warning("Could not write backup manifest in %s: %s", path, exc)
        logger.info("Backup of apt sources completed in %s", path)
        return backup

    def restore(self, backup: Backup) -> RestoreReport:
        """Put the configuration captured in *backup* back in place.

        Best effort: a failure on the root file is recorded and the drop-in
        directory is still restored.  Only the repository configuration is
        touched; refreshing the package lists is the caller's job.
        """

        report = RestoreReport(backup=backup)
        logger.info("Restoring apt sources from %s", backup.path)

        try:
            shutil.copy2(backup.root_copy, self.root_file)
            report.root_restored = True
            logger.info("%s restored from backup", self.root_file)
        except OSError as exc:
            message = f"Failed to restore {self.root_file}: {exc}"
            logger.error(message)
            report.errors.append(message)

        if not backup.drop_in_copy.is_dir():
            logger.info("No backup of %s; skipping it", self.drop_in_dir)
            report.drop_in_restored = backup.drop_in_copied
            if not backup.drop_in_copied:
                report.errors.append(f"The backup holds no usable copy of {self.drop_in_dir}")
            return report

        try:
            self._clear_drop_in()
            shutil.copytree(backup.drop_in_copy, self.drop_in_dir, symlinks=True, dirs_exist_ok=True)
            report.drop_in_restored = True
            logger.info("%s restored from backup", self.drop_in_dir)
        except (OSError, shutil.Error) as exc:
            message = f"Failed to restore {self.drop_in_dir}: {exc}"
            logger.error(message)
            report.errors.append(message)
        return report

    def _clear_drop_in(self) -> None:
        self.drop_in_dir.mkdir(parents=True, exist_ok=True)
        for child in self.drop_in_dir.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    def list_backups(self) -> List[Backup]:
        """Return the readable backups under the backup root, newest first."""

        if not self.backup_root.is_dir():
            return []
        backups: list[Backup] = []
        for path in sorted(self.backup_root.glob(f"{BACKUP_PREFIX}*"), reverse=True):
            if not (path / MANIFEST_NAME).is_file():
                continue
            try:
                backups.append(Backup.load(path))
            except BackupError as exc:
                logger.warning("%s", exc)
        return backups


__all__ = ["Backup", "RepoConfigStore", "RestoreReport"]
