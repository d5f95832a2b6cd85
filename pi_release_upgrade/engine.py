"""High level operations offered by the menu, the subcommands and the GUI.

:class:`UpgradeEngine` wires the collaborators together for one invocation:
preflight checks, the release resolver, the backup store, the rewriter and the
stage pipeline.  Each public operation returns a process exit code from
:mod:`pi_release_upgrade.exit_codes` and reports to the operator through the
injected presentation.
"""

from __future__ import annotations

from contextlib import contextmanager
import fcntl
import logging
import os
from pathlib import Path
import threading
from typing import Iterator, List, Optional

from . import exit_codes
from .backup import Backup, RepoConfigStore
from .catalogs import DirectoryListingCatalogClient, EndOfLifeCatalogClient, Opener
from .config import Settings
from .errors import AlreadyRunningError, BackupError, PreconditionError, ResolutionError, UpgradeToolError
from .orchestrator import TransitionOrchestrator, TransitionState, failure_summary
from .pipeline import (
    CaptureSink,
    Runner,
    StageStatus,
    UpgradePipeline,
    pipeline_succeeded,
    refresh_stages,
    resync_stage,
    run_cmd,
)
from .preflight import SystemPreflight, run_preflight
from .presentation import Presentation
from .resolver import ReleaseResolver
from .rewriter import SourceRewriter
from .versioning import get_current_codename

logger = logging.getLogger(__name__)


@contextmanager
def run_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on *path* for the duration of a run."""

    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a")
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise AlreadyRunningError(f"Another upgrade is already running (lock: {path})") from exc
        handle.truncate(0)
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class UpgradeEngine:
    def __init__(
        self,
        settings: Settings,
        presentation: Presentation,
        *,
        runner: Runner = run_cmd,
        preflight: Optional[SystemPreflight] = None,
        resolver: Optional[ReleaseResolver] = None,
        opener: Optional[Opener] = None,
    ) -> None:
        self.settings = settings
        self.presentation = presentation
        self.runner = runner
        self.preflight = preflight or SystemPreflight(settings, runner=runner)
        self.resolver = resolver or ReleaseResolver(
            EndOfLifeCatalogClient(
                settings.debian_feed_url,
                connect_timeout=settings.connect_timeout,
                total_timeout=settings.total_timeout,
                opener=opener,
            ),
            DirectoryListingCatalogClient(
                settings.vendor_listing_url,
                connect_timeout=settings.connect_timeout,
                total_timeout=settings.total_timeout,
                opener=opener,
            ),
        )
        self.store = RepoConfigStore(settings.sources_list, settings.sources_list_d, settings.backup_root)
        self._orchestrator: Optional[TransitionOrchestrator] = None
        self._pipeline: Optional[UpgradePipeline] = None
        self._cancel = threading.Event()

    # ---------- helpers ----------
    def _new_pipeline(self, *, cancellable: bool = True) -> UpgradePipeline:
        p = self.presentation
        pipeline = UpgradePipeline(
            runner=self.runner,
            sink=CaptureSink.in_directory(self.settings.capture_dir),
            progress_callback=p.progress,
            output_callback=p.output,
            result_callback=p.stage_finished,
            advisory_callback=p.advisory,
        )
        if cancellable and self._cancel.is_set():
            pipeline.cancel()
        self._pipeline = pipeline
        return pipeline

    def cancel(self) -> None:
        """Stop the running operation at the next stage boundary."""

        self._cancel.set()
        if self._orchestrator is not None:
            self._orchestrator.cancel()
        if self._pipeline is not None:
            self._pipeline.cancel()

    def _report_error(self, title: str, exc: UpgradeToolError) -> int:
        logger.error("%s: %s", title, exc)
        self.presentation.error(title, exc.describe())
        return exit_codes.exit_code_for(exc)

    # ---------- operations ----------
    def refresh_packages(self) -> int:
        """Refresh package lists and upgrade within the current release."""

        try:
            self.preflight.check_permissions()
            with run_lock(self.settings.lock_path):
                return self._refresh_packages()
        except PreconditionError as exc:
            return self._report_error("Cannot refresh packages", exc)

    def _refresh_packages(self) -> int:
        p = self.presentation
        if run_preflight(self.preflight, p, major=False) is None:
            p.info("Refresh cancelled", "Nothing was changed.")
            return exit_codes.SUCCESS

        pipeline = self._new_pipeline()
        results = pipeline.run(refresh_stages())
        if pipeline.cancelled:
            done = [r.name for r in results if r.status is not StageStatus.SKIPPED]
            p.info(
                "Refresh cancelled",
                "The refresh was stopped between stages. "
                + (f"Completed: {', '.join(done)}. " if done else "")
                + "No repository configuration was changed.",
            )
            return exit_codes.SUCCESS
        if pipeline_succeeded(results):
            p.info("Packages refreshed", "The system packages are up to date.")
            return exit_codes.SUCCESS
        failed = next(r for r in results if r.fatal)
        p.error(
            "Package refresh failed",
            f"Stage '{failed.name}' failed (exit status {failed.returncode}). "
            f"Package manager output: {failed.capture_path}\n"
            "No repository configuration was changed.",
        )
        return exit_codes.FAILURE

    def major_transition(self) -> int:
        """Move the system to the newest release both catalogs agree on."""

        try:
            self.preflight.check_permissions()
            with run_lock(self.settings.lock_path):
                return self._major_transition()
        except PreconditionError as exc:
            return self._report_error("Cannot start the major upgrade", exc)

    def _major_transition(self) -> int:
        p = self.presentation
        report = run_preflight(self.preflight, p)
        if report is None:
            p.info("Upgrade cancelled", "Nothing was changed.")
            return exit_codes.SUCCESS

        current = get_current_codename(self.settings.os_release_path, self.settings.debian_version_path)
        orchestrator = TransitionOrchestrator(
            self.resolver,
            self.store,
            rewriter=SourceRewriter(self.store),
            presentation=p,
            runner=self.runner,
            capture_dir=self.settings.capture_dir,
            current_codename=current,
        )
        self._orchestrator = orchestrator
        if self._cancel.is_set():
            orchestrator.cancel()

        try:
            resolution = orchestrator.resolve()
        except ResolutionError as exc:
            return self._report_error("Could not determine the target release", exc)

        simulate = False
        if resolution.target != current:
            simulate = p.confirm(
                "Simulate first",
                "Run 'apt-get --simulate full-upgrade' to list the packages that would be "
                "installed, upgraded or removed? Nothing is changed.",
            )
        preview = orchestrator.preview(simulate=simulate)
        if preview.already_current:
            p.info(
                "Already up to date",
                f"This system already runs {resolution.target}, the newest supported release.",
            )
            orchestrator.confirm(False)
            return exit_codes.SUCCESS

        p.show_text("Planned changes", preview.describe())
        accepted = p.confirm(
            "Major upgrade",
            f"Upgrade from {current or 'the current release'} to {resolution.target}?\n"
            "This can take a long time. Do not switch off the device while it runs.",
        )
        try:
            state = orchestrator.confirm(accepted, disable=report.third_party)
        except BackupError as exc:
            return self._report_error("Backup failed; nothing was changed", exc)

        if state is TransitionState.IDLE:
            p.info("Upgrade cancelled", "Nothing was changed.")
            return exit_codes.SUCCESS
        if state is TransitionState.SUCCEEDED:
            backup = orchestrator.outcome.backup
            p.info(
                "Upgrade complete",
                f"The system was upgraded to {resolution.target}.\n"
                f"The previous apt sources are kept in {backup.path if backup else 'the backup directory'}.",
            )
            self.offer_reboot()
            return exit_codes.SUCCESS

        p.error("Major upgrade failed", failure_summary(orchestrator.outcome))
        restore = p.confirm(
            "Restore repository configuration?",
            "Restore the apt sources from the backup and refresh the package lists? "
            "Packages already upgraded will not be downgraded.",
        )
        outcome = orchestrator.decide_rollback(restore)
        p.error("System may be inconsistent", failure_summary(outcome))
        return exit_codes.FAILURE

    def list_backups(self) -> List[Backup]:
        return self.store.list_backups()

    def restore_backup(self, path: Path) -> int:
        """Restore the apt sources from *path* and refresh the package lists."""

        try:
            self.preflight.check_permissions()
            backup = Backup.load(path)
            with run_lock(self.settings.lock_path):
                report = self.store.restore(backup)
                resync = self._new_pipeline(cancellable=False).run([resync_stage()])[0]
        except (PreconditionError, BackupError) as exc:
            return self._report_error("Restore failed", exc)

        if not report.ok:
            self.presentation.error("Restore incomplete", "\n".join(report.errors))
            return exit_codes.FAILURE
        if resync.returncode != 0:
            self.presentation.warning(
                "Package lists not refreshed",
                f"'apt-get update' failed after the restore (exit status {resync.returncode}). "
                "Run it manually.",
            )
        self.presentation.info("Restore complete", f"The apt sources were restored from {backup.path}.")
        return exit_codes.SUCCESS

    def offer_reboot(self) -> None:
        if self.presentation.confirm("Reboot", "A reboot is needed to finish the upgrade. Reboot now?"):
            logger.info("Rebooting on operator request")
            self.runner(["systemctl", "reboot"])
        else:
            self.presentation.info("Reboot later", "Reboot the device as soon as possible.")


__all__ = ["UpgradeEngine", "run_lock"]
