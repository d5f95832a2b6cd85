"""State machine driving one major release transition.

::

    IDLE -> RESOLVING -> AWAITING_CONFIRMATION -> BACKING_UP -> REWRITING
         -> EXECUTING -> SUCCEEDED
                      -> FAILED_AWAITING_ROLLBACK_DECISION -> ROLLED_BACK
                                                           -> FAILED_TERMINAL

A failed resolution or backup ends in ``ABORTED`` with nothing changed; a
declined confirmation returns to ``IDLE``, also with nothing changed.  The
caller drives every step that needs a decision: :meth:`confirm` after the
target is known and :meth:`decide_rollback` after a failed upgrade.  The
orchestrator never rolls back on its own and never re-enters ``RESOLVING``;
each attempt uses a new instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .backup import Backup, RepoConfigStore, RestoreReport
from .errors import (
    BackupError,
    ExecutionError,
    InvalidTransitionError,
    ResolutionError,
    RollbackError,
)
from .pipeline import (
    CaptureSink,
    Runner,
    StageResult,
    UpgradePipeline,
    pipeline_succeeded,
    resync_stage,
    run_cmd,
    simulate_stage,
    transition_stages,
)
from .presentation import LoggingPresentation, Presentation
from .resolver import ReleaseResolver, Resolution
from .rewriter import RewriteReport, SourceRewriter

logger = logging.getLogger(__name__)


class TransitionState(enum.Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    BACKING_UP = "backing-up"
    REWRITING = "rewriting"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED_AWAITING_ROLLBACK_DECISION = "failed-awaiting-rollback-decision"
    ROLLED_BACK = "rolled-back"
    FAILED_TERMINAL = "failed-terminal"
    ABORTED = "aborted"


_ALLOWED = {
    TransitionState.IDLE: {TransitionState.RESOLVING},
    TransitionState.RESOLVING: {TransitionState.AWAITING_CONFIRMATION, TransitionState.ABORTED},
    TransitionState.AWAITING_CONFIRMATION: {TransitionState.BACKING_UP, TransitionState.IDLE},
    TransitionState.BACKING_UP: {TransitionState.REWRITING, TransitionState.ABORTED},
    TransitionState.REWRITING: {TransitionState.EXECUTING},
    TransitionState.EXECUTING: {
        TransitionState.SUCCEEDED,
        TransitionState.FAILED_AWAITING_ROLLBACK_DECISION,
    },
    TransitionState.FAILED_AWAITING_ROLLBACK_DECISION: {
        TransitionState.ROLLED_BACK,
        TransitionState.FAILED_TERMINAL,
    },
}

TERMINAL_STATES = frozenset(
    {
        TransitionState.SUCCEEDED,
        TransitionState.ROLLED_BACK,
        TransitionState.FAILED_TERMINAL,
        TransitionState.ABORTED,
    }
)


@dataclass(frozen=True)
class Preview:
    target: str
    current: Optional[str]
    rewrite: RewriteReport
    simulation: Optional[StageResult] = None

    @property
    def already_current(self) -> bool:
        return self.current is not None and self.current == self.target

    def describe(self) -> str:
        lines = [f"Target release: {self.target} (current: {self.current or 'unknown'})"]
        if self.rewrite.changes:
            lines.append("Repository changes:")
            lines.extend(
                f"  {c.path}:{c.line_no + 1}\n    - {c.old}\n    + {c.new}" for c in self.rewrite.changes
            )
        else:
            lines.append("No repository line needs to change.")
        if self.simulation is not None:
            lines.append("Simulated upgrade:")
            lines.extend(f"  {line}" for line in self.simulation.output)
        return "\n".join(lines)


@dataclass
class TransitionOutcome:
    state: TransitionState = TransitionState.IDLE
    current: Optional[str] = None
    resolution: Optional[Resolution] = None
    backup: Optional[Backup] = None
    rewrite: Optional[RewriteReport] = None
    disabled: Optional[RewriteReport] = None
    results: List[StageResult] = field(default_factory=list)
    restore: Optional[RestoreReport] = None
    resync: Optional[StageResult] = None
    error: Optional[Exception] = None
    cancelled: bool = False

    @property
    def target(self) -> Optional[str]:
        return self.resolution.target if self.resolution else None

    @property
    def inconsistent(self) -> bool:
        """True when the system may be left half-upgraded or half-restored.

        A rollback only restores the repository files; packages already
        upgraded stay upgraded.
        """

        return self.state in (TransitionState.FAILED_TERMINAL, TransitionState.ROLLED_BACK)

    @property
    def succeeded(self) -> bool:
        return self.state is TransitionState.SUCCEEDED


class TransitionOrchestrator:
    def __init__(
        self,
        resolver: ReleaseResolver,
        store: RepoConfigStore,
        *,
        rewriter: Optional[SourceRewriter] = None,
        presentation: Optional[Presentation] = None,
        runner: Runner = run_cmd,
        capture_dir: Path = Path("/tmp"),
        current_codename: Optional[str] = None,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.rewriter = rewriter or SourceRewriter(store)
        self.presentation: Presentation = presentation or LoggingPresentation()
        self.runner = runner
        self.capture_dir = capture_dir
        self.outcome = TransitionOutcome(current=current_codename)

        self._started = False
        self._cancel = threading.Event()
        self._pipeline: Optional[UpgradePipeline] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> TransitionState:
        return self.outcome.state

    def _transition(self, new: TransitionState) -> None:
        old = self.outcome.state
        if new not in _ALLOWED.get(old, set()):
            raise InvalidTransitionError(f"Cannot move from {old.value} to {new.value}")
        logger.info("Transition state: %s -> %s", old.value, new.value)
        self.outcome.state = new
        self.presentation.state_changed(old.value, new.value)

    def _require(self, *states: TransitionState) -> None:
        if self.outcome.state not in states:
            expected = ", ".join(s.value for s in states)
            raise InvalidTransitionError(
                f"Operation not allowed in state {self.outcome.state.value} (expected {expected})"
            )

    def _new_pipeline(self, *, cancellable: bool = True) -> UpgradePipeline:
        pipeline = UpgradePipeline(
            runner=self.runner,
            sink=CaptureSink.in_directory(self.capture_dir),
            progress_callback=self.presentation.progress,
            output_callback=self.presentation.output,
            result_callback=self.presentation.stage_finished,
            advisory_callback=self.presentation.advisory,
        )
        with self._lock:
            self._pipeline = pipeline
            if cancellable and self._cancel.is_set():
                pipeline.cancel()
        return pipeline

    def cancel(self) -> None:
        """Ask the run to stop at the next stage boundary."""

        with self._lock:
            self._cancel.set()
            if self._pipeline is not None:
                self._pipeline.cancel()

    def _known_codenames(self) -> frozenset[str]:
        """Codenames that count as a release name when found in a suite field."""

        resolution = self.outcome.resolution
        assert resolution is not None
        known = resolution.primary.as_set() | resolution.secondary.as_set()
        if self.outcome.current:
            known |= {self.outcome.current}
        return known

    # ---------- Resolving ----------
    def resolve(self) -> Resolution:
        """Determine the target release.  Raises the resolver's error on failure."""

        self._require(TransitionState.IDLE)
        if self._started:
            raise InvalidTransitionError("This transition has already run; start a new one")
        self._started = True
        self._transition(TransitionState.RESOLVING)
        try:
            resolution = self.resolver.resolve_target()
        except ResolutionError as exc:
            self.outcome.error = exc
            self._transition(TransitionState.ABORTED)
            raise
        self.outcome.resolution = resolution
        self._transition(TransitionState.AWAITING_CONFIRMATION)
        return resolution

    def preview(self, *, simulate: bool = False) -> Preview:
        """Show what would change, without changing anything."""

        self._require(TransitionState.AWAITING_CONFIRMATION)
        resolution = self.outcome.resolution
        assert resolution is not None
        plan = self.rewriter.plan(resolution.target, self._known_codenames())
        simulation = None
        if simulate:
            pipeline = UpgradePipeline(runner=self.runner, output_callback=self.presentation.output)
            simulation = pipeline.run([simulate_stage()])[0]
        return Preview(
            target=resolution.target,
            current=self.outcome.current,
            rewrite=plan,
            simulation=simulation,
        )

    # ---------- Confirmation and execution ----------
    def confirm(self, accepted: bool, *, disable: Sequence[Path] = ()) -> TransitionState:
        """Act on the operator's answer to the confirmation question.

        A negative answer returns to ``IDLE`` without any side effect.  A
        positive one backs up, rewrites (and disables the repositories listed
        in *disable*) and runs the upgrade stages.
        """

        self._require(TransitionState.AWAITING_CONFIRMATION)
        if not accepted:
            logger.info("Major upgrade declined at confirmation; nothing was changed")
            self._transition(TransitionState.IDLE)
            return self.state

        self._transition(TransitionState.BACKING_UP)
        try:
            backup = self.store.snapshot()
        except BackupError as exc:
            self.outcome.error = exc
            self._transition(TransitionState.ABORTED)
            raise
        self.outcome.backup = backup
        self.presentation.info(
            "Backup created",
            f"Your apt sources were backed up to:\n{backup.path}\n"
            "Keep this path in case you need to restore manually.",
        )

        self._transition(TransitionState.REWRITING)
        self._rewrite(backup, disable)

        self._transition(TransitionState.EXECUTING)
        self._execute()
        return self.state

    def _rewrite(self, backup: Backup, disable: Iterable[Path]) -> None:
        resolution = self.outcome.resolution
        assert resolution is not None
        disable = list(disable)
        if disable:
            self.outcome.disabled = self.rewriter.disable_entries(disable, backup=backup)
        report = self.rewriter.rewrite(resolution.target, self._known_codenames(), backup=backup)
        self.outcome.rewrite = report
        if report.failures:
            self.presentation.warning(
                "Some repository files were not updated",
                "\n".join(f.describe() for f in report.failures),
            )

    def _execute(self) -> None:
        resolution = self.outcome.resolution
        assert resolution is not None
        pipeline = self._new_pipeline()
        try:
            results = pipeline.run(transition_stages(resolution.target))
        except Exception as exc:
            logger.exception("Upgrade stages aborted")
            self.outcome.error = ExecutionError(f"The upgrade stages stopped unexpectedly: {exc}")
            self.outcome.cancelled = pipeline.cancelled
            self._transition(TransitionState.FAILED_AWAITING_ROLLBACK_DECISION)
            return
        self.outcome.results = results
        self.outcome.cancelled = pipeline.cancelled
        if pipeline_succeeded(results):
            self._transition(TransitionState.SUCCEEDED)
            return
        self._transition(TransitionState.FAILED_AWAITING_ROLLBACK_DECISION)

    # ---------- Rollback ----------
    def decide_rollback(self, restore: bool) -> TransitionOutcome:
        """Restore the configuration (``True``) or leave things as they are."""

        self._require(TransitionState.FAILED_AWAITING_ROLLBACK_DECISION)
        backup = self.outcome.backup
        assert backup is not None
        if not restore:
            logger.warning(
                "Rollback declined; apt sources stay pointed at %s, backup kept at %s",
                self.outcome.target,
                backup.path,
            )
            self._transition(TransitionState.FAILED_TERMINAL)
            return self.outcome

        report = self.store.restore(backup)
        self.outcome.restore = report
        if not report.ok:
            self.outcome.error = RollbackError("; ".join(report.errors))

        pipeline = self._new_pipeline(cancellable=False)
        resync = pipeline.run([resync_stage()])[0]
        self.outcome.resync = resync
        if resync.returncode != 0 and not isinstance(self.outcome.error, RollbackError):
            self.outcome.error = RollbackError(
                f"'apt-get update' failed after restoring the sources (rc={resync.returncode})"
            )
        self._transition(TransitionState.ROLLED_BACK)
        return self.outcome


def failure_summary(outcome: TransitionOutcome) -> str:
    """Operator-facing text for a failed transition, with the way out."""

    lines: list[str] = []
    failed = [r for r in outcome.results if r.fatal]
    if outcome.cancelled:
        lines.append("The upgrade was cancelled between stages.")
    if isinstance(outcome.error, ExecutionError):
        lines.append(str(outcome.error))
    for result in failed:
        lines.append(f"Stage '{result.name}' failed (exit status {result.returncode}).")
        if result.capture_path:
            lines.append(f"Package manager output: {result.capture_path}")
    backup = outcome.backup
    if outcome.state is TransitionState.FAILED_AWAITING_ROLLBACK_DECISION and backup:
        lines.append(
            "The repository configuration can be restored from the backup at "
            f"{backup.path}. This does NOT undo packages that were already installed "
            "or upgraded."
        )
    elif outcome.state is TransitionState.ROLLED_BACK and backup:
        lines.append(f"The repository configuration was restored from {backup.path}.")
        if isinstance(outcome.error, RollbackError):
            lines.append(str(outcome.error))
        lines.append(
            "Packages already installed or upgraded were NOT reverted; the system may "
            "be in a mixed state and need manual attention."
        )
    elif outcome.state is TransitionState.FAILED_TERMINAL and backup:
        lines.append(
            "The apt sources still point at the new release and the system may be "
            "inconsistent. To restore the configuration later run:\n"
            f"  pi-release-upgrade restore {backup.path}"
        )
    return "\n".join(lines)


__all__ = [
    "Preview",
    "TERMINAL_STATES",
    "TransitionOrchestrator",
    "TransitionOutcome",
    "TransitionState",
    "failure_summary",
]
