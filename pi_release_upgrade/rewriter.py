"""Point the apt sources at a new release codename.

Only the suite field of an enabled entry is ever changed, and only when it is
exactly one of the known codenames.  A token such as ``bookworm-extra`` or a
codename appearing inside a URI or a comment stays as it is.  Files that need
no change are not written at all, so running a rewrite twice leaves the second
run without effect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .apt_sources import (
    SourcesFile,
    atomic_write_text,
    disabled_text,
    load_sources,
    replace_suites,
    repository_files,
)
from .backup import Backup, RepoConfigStore
from .errors import RewriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineChange:
    path: Path
    line_no: int
    old: str
    new: str


@dataclass
class RewriteReport:
    target: str
    changed: List[Path] = field(default_factory=list)
    unchanged: List[Path] = field(default_factory=list)
    failures: List[RewriteError] = field(default_factory=list)
    changes: List[LineChange] = field(default_factory=list)

    @property
    def failed(self) -> List[Path]:
        return [failure.path for failure in self.failures]

    @property
    def ok(self) -> bool:
        return not self.failures


def _planned_text(sources: SourcesFile, target: str, known: frozenset[str]) -> Optional[str]:
    entries = [
        entry
        for entry in sources.enabled_entries
        if entry.suite in known and entry.suite != target
    ]
    if not entries:
        return None
    return replace_suites(sources, entries, target)


def _line_changes(path: Path, old_text: str, new_text: str) -> List[LineChange]:
    old_lines = old_text.splitlines()
    new_lines = new_text.splitlines()
    return [
        LineChange(path, n, old, new)
        for n, (old, new) in enumerate(zip(old_lines, new_lines))
        if old != new
    ]


class SourceRewriter:
    """Rewrites the files owned by a :class:`RepoConfigStore`."""

    def __init__(self, store: RepoConfigStore) -> None:
        self.store = store

    def files(self) -> List[Path]:
        return repository_files(self.store.root_file, self.store.drop_in_dir)

    def plan(self, target: str, known: Iterable[str]) -> RewriteReport:
        """Compute the rewrite without writing anything."""

        return self._process(target, frozenset(known), write=False)

    def rewrite(self, target: str, known: Iterable[str], *, backup: Backup) -> RewriteReport:
        """Replace known codenames with *target* in every repository file.

        *backup* must be the snapshot taken for this attempt; it is only used
        to tie the log of the rewrite to the place it can be undone from.
        """

        logger.info(
            "Updating codenames in apt sources to '%s' (backup: %s)", target, backup.path
        )
        report = self._process(target, frozenset(known), write=True)
        logger.info(
            "Codename update finished: %d changed, %d unchanged, %d failed",
            len(report.changed),
            len(report.unchanged),
            len(report.failures),
        )
        return report

    def _process(self, target: str, known: frozenset[str], *, write: bool) -> RewriteReport:
        report = RewriteReport(target=target)
        for path in self.files():
            try:
                sources = load_sources(path)
            except (OSError, UnicodeDecodeError) as exc:
                self._record_failure(report, path, f"could not read: {exc}")
                continue

            new_text = _planned_text(sources, target, known)
            if new_text is None:
                logger.info("No codenames to update in %s", path)
                report.unchanged.append(path)
                continue

            changes = _line_changes(path, sources.text, new_text)
            if write:
                try:
                    atomic_write_text(path, new_text)
                except OSError as exc:
                    self._record_failure(report, path, f"could not save changes: {exc}")
                    continue
                for change in changes:
                    logger.info("  -> %s:%d: '%s' -> '%s'", path, change.line_no + 1, change.old, change.new)
            report.changed.append(path)
            report.changes.extend(changes)
        return report

    @staticmethod
    def _record_failure(report: RewriteReport, path: Path, reason: str) -> None:
        error = RewriteError(path, reason)
        logger.error("%s", error)
        report.failures.append(error)

    def disable_entries(self, paths: Iterable[Path], *, backup: Backup) -> RewriteReport:
        """Switch off every enabled entry in *paths* (third-party repositories)."""

        report = RewriteReport(target="")
        for path in paths:
            try:
                sources = load_sources(path)
                new_text = disabled_text(sources)
                if new_text == sources.text:
                    report.unchanged.append(path)
                    continue
                atomic_write_text(path, new_text)
            except (OSError, UnicodeDecodeError) as exc:
                self._record_failure(report, path, f"could not disable: {exc}")
                continue
            logger.info("Repository disabled: %s (backup: %s)", path, backup.path)
            report.changed.append(path)
        return report


__all__ = ["LineChange", "RewriteReport", "SourceRewriter"]
