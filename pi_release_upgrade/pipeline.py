"""Run package manager stages one after another.

A :class:`Stage` describes one apt-get invocation and whether the run may go
on when it fails.  :class:`UpgradePipeline` executes a list of them strictly
in order, streams their combined output into a capture file and to an
optional callback, scans it for known markers and reports weighted progress.
Failure handling is data: the caller gets one :class:`StageResult` per stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import enum
import logging
import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .config import CAPTURE_PREFIX, TIMESTAMP_FORMAT
from .markers import APT_ENV, MARKERS_VERSION, OutputScan, Severity, scan_output

logger = logging.getLogger(__name__)

APT_GET = "/usr/bin/apt-get"

LineCallback = Callable[[str], None]
ProgressCallback = Callable[[float, str], None]
ResultCallback = Callable[["StageResult"], None]


def apt_command(*args: str) -> List[str]:
    base = [
        APT_GET,
        "-y",
        "-o",
        "Dpkg::Options::=--force-confdef",
        "-o",
        "Dpkg::Options::=--force-confold",
    ]
    return base + list(args)


def run_cmd(
    cmd: Sequence[str],
    env: Optional[dict] = None,
    timeout: Optional[float] = None,
    on_line: Optional[LineCallback] = None,
    log_output: bool = True,
) -> Tuple[int, List[str]]:
    """Run a command and return ``(rc, output_lines)``.

    stdout and stderr are merged and read line by line so callers can show the
    output while it is produced.  *timeout* only bounds the wait after the
    output stream closes; package manager stages pass ``None`` because an
    upgrade in progress must never be killed.

    A failing *on_line* callback is logged once and otherwise ignored: the
    output keeps being drained and the child is always waited for, so it
    never sees its output pipe closed underneath it.
    """

    cmd_list = list(cmd)
    display_cmd = " ".join(shlex.quote(part) for part in cmd_list)
    output_lines: list[str] = []

    logger.info("RUN: %s", display_cmd)
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        process = subprocess.Popen(
            cmd_list,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=full_env,
        )
    except OSError as e:
        logger.exception("Failed to start %s: %s", display_cmd, e)
        output_lines.append(str(e))
        if on_line:
            try:
                on_line(str(e))
            except Exception:
                logger.exception("Output callback failed for %s", display_cmd)
        return 127, output_lines

    start = time.time()
    rc = 1
    callback_failed = False
    try:
        assert process.stdout is not None
        for line in process.stdout:
            line = line.rstrip()
            if log_output:
                logger.info(line)
            output_lines.append(line)
            if on_line and not callback_failed:
                try:
                    on_line(line)
                except Exception:
                    callback_failed = True
                    logger.exception("Output callback failed for %s; still waiting for it", display_cmd)
        rc = process.wait(timeout=timeout)
        logger.info("RET(%s): %s s", rc, int(time.time() - start))
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
        rc = 124
        message = f"Command timed out: {display_cmd}"
        logger.error(message)
        output_lines.append(message)
    finally:
        if process.poll() is None:
            # Interrupted while reading: let the child finish before closing its pipe.
            assert process.stdout is not None
            for _line in process.stdout:
                pass
            process.wait()
        if process.stdout:
            process.stdout.close()

    if rc != 0:
        logger.warning("Non-zero exit: %s => %s", display_cmd, rc)
    return rc, output_lines


Runner = Callable[..., Tuple[int, List[str]]]


@dataclass(frozen=True)
class Stage:
    name: str
    argv: Tuple[str, ...]
    continue_on_failure: bool = False
    weight: int = 1
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.name


class StageStatus(enum.Enum):
    OK = "ok"
    FAILED = "failed"
    FAILED_NON_FATAL = "failed-non-fatal"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageResult:
    name: str
    status: StageStatus
    returncode: Optional[int] = None
    output: Tuple[str, ...] = ()
    capture_path: Optional[Path] = None
    scan: OutputScan = field(default_factory=lambda: OutputScan(Severity.OK))

    @property
    def severity(self) -> Severity:
        return self.scan.severity

    @property
    def fatal(self) -> bool:
        return self.status is StageStatus.FAILED


def pipeline_succeeded(results: Sequence[StageResult]) -> bool:
    """True when every stage ran and none failed fatally."""

    return all(r.status in (StageStatus.OK, StageStatus.FAILED_NON_FATAL) for r in results)


class CaptureSink:
    """Append-only file collecting the output of every stage of one run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def in_directory(cls, directory: Path, now: Optional[datetime] = None) -> "CaptureSink":
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        return cls(directory / f"{CAPTURE_PREFIX}{stamp}.log")

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def write(self, line: str) -> None:
        with self._lock, open(self.path, "a") as handle:
            handle.write(line + "\n")


class UpgradePipeline:
    """Execute stages sequentially with progress and advisory reporting.

    The callbacks are observation only: they are called from the thread that
    runs the pipeline and must return quickly.  GUI front-ends hand the values
    over to their main loop instead of drawing from inside the callback.
    """

    def __init__(
        self,
        *,
        runner: Runner = run_cmd,
        sink: Optional[CaptureSink] = None,
        env: Optional[dict] = None,
        progress_callback: Optional[ProgressCallback] = None,
        output_callback: Optional[LineCallback] = None,
        result_callback: Optional[ResultCallback] = None,
        advisory_callback: Optional[ResultCallback] = None,
    ) -> None:
        self.runner = runner
        self.sink = sink
        self.env = dict(APT_ENV if env is None else env)
        self.progress_callback = progress_callback
        self.output_callback = output_callback
        self.result_callback = result_callback
        self.advisory_callback = advisory_callback

        self.cancelled = False
        self.capture_failed = False
        self._cancel = threading.Event()
        self._progress_lock = threading.Lock()
        self._progress: Tuple[float, str] = (0.0, "")
        self.total_units = 0
        self.done_units = 0

    @property
    def progress(self) -> Tuple[float, str]:
        """Latest ``(fraction, label)`` pair; safe to poll from any thread."""

        with self._progress_lock:
            return self._progress

    def cancel(self) -> None:
        """Stop before the next stage starts.  The running stage completes."""

        logger.info("Cancellation requested; stopping at the next stage boundary")
        self._cancel.set()

    def _report_progress(self, units: int, label: str) -> None:
        with self._progress_lock:
            self.done_units += units
            fraction = max(0.0, min(1.0, self.done_units / float(self.total_units or 1)))
            fraction = max(fraction, self._progress[0])
            self._progress = (fraction, label)
        if self.progress_callback:
            self.progress_callback(fraction, label)

    def _capture(self, line: str) -> None:
        if not self.sink or self.capture_failed:
            return
        try:
            self.sink.write(line)
        except OSError as exc:
            # Full disk while dpkg unpacks: the stage goes on, the main log keeps the output.
            self.capture_failed = True
            logger.error("Cannot write %s (%s); output is only kept in the log from now on", self.sink.path, exc)

    def _on_line(self, line: str) -> None:
        self._capture(line)
        if self.output_callback:
            self.output_callback(line)

    @property
    def capture_path(self) -> Optional[Path]:
        if self.sink is None or self.capture_failed:
            return None
        return self.sink.path

    def run(self, stages: Sequence[Stage]) -> List[StageResult]:
        self.total_units = sum(max(0, s.weight) for s in stages)
        self.done_units = 0
        if self.sink and not self.capture_failed:
            try:
                self.sink.open()
            except OSError as exc:
                self.capture_failed = True
                logger.error("Cannot create capture file %s (%s); output is only kept in the log", self.sink.path, exc)

        results: list[StageResult] = []
        halted = False
        for index, stage in enumerate(stages, start=1):
            if halted or self._cancel.is_set():
                if not halted:
                    self.cancelled = True
                    logger.warning("Run cancelled before stage '%s'", stage.name)
                halted = True
                results.append(self._finish(StageResult(stage.name, StageStatus.SKIPPED)))
                continue

            self._report_progress(0, f"Step {index}/{len(stages)}: {stage.display}")
            result = self._run_stage(stage)
            results.append(self._finish(result))
            if result.status is StageStatus.FAILED:
                logger.error("Stage '%s' failed (rc=%s); stopping", stage.name, result.returncode)
                halted = True
                continue
            if result.status is StageStatus.FAILED_NON_FATAL:
                logger.warning("Stage '%s' failed (rc=%s); continuing", stage.name, result.returncode)
            self._report_progress(max(0, stage.weight), f"{stage.display} done")
        return results

    def _run_stage(self, stage: Stage) -> StageResult:
        logger.info(" === %s ===", stage.name)
        self._capture(f"=== {stage.name}: {' '.join(stage.argv)} ===")
        rc, lines = self.runner(list(stage.argv), env=self.env, on_line=self._on_line)
        scan = scan_output(lines)
        if rc == 0:
            status = StageStatus.OK
        elif stage.continue_on_failure:
            status = StageStatus.FAILED_NON_FATAL
        else:
            status = StageStatus.FAILED
        result = StageResult(
            name=stage.name,
            status=status,
            returncode=rc,
            output=tuple(lines),
            capture_path=self.capture_path,
            scan=scan,
        )
        if scan.severity is not Severity.OK:
            logger.warning(
                "Stage '%s' output contains %s markers (rules v%s): %s",
                stage.name,
                scan.severity.label,
                MARKERS_VERSION,
                ", ".join(scan.kinds),
            )
            if self.advisory_callback:
                self.advisory_callback(result)
        return result

    def _finish(self, result: StageResult) -> StageResult:
        if self.result_callback:
            self.result_callback(result)
        return result


def refresh_stages() -> List[Stage]:
    """Stages of an in-place package refresh."""

    return [
        Stage("update", tuple(apt_command("update")), weight=2, label="Refreshing package lists"),
        Stage("upgrade", tuple(apt_command("upgrade")), weight=6, label="Upgrading packages"),
        Stage(
            "autoremove",
            tuple(apt_command("autoremove")),
            continue_on_failure=True,
            weight=1,
            label="Removing unneeded packages",
        ),
    ]


def transition_stages(target: str) -> List[Stage]:
    """Stages of a major upgrade once the sources point at *target*."""

    return [
        Stage("update", tuple(apt_command("update")), weight=2, label=f"Refreshing package lists ({target})"),
        Stage(
            "full-upgrade",
            tuple(apt_command("full-upgrade")),
            weight=20,
            label=f"Upgrading the system to {target}",
        ),
        Stage(
            "autoremove",
            tuple(apt_command("autoremove")),
            continue_on_failure=True,
            weight=1,
            label="Removing unneeded packages",
        ),
    ]


def resync_stage() -> Stage:
    """Package list refresh run after the sources were restored."""

    return Stage("resync", tuple(apt_command("update")), continue_on_failure=True, label="Refreshing package lists")


def simulate_stage() -> Stage:
    """Non-mutating preview of what a full upgrade would do."""

    return Stage(
        "simulate",
        (APT_GET, "--simulate", "full-upgrade"),
        continue_on_failure=True,
        label="Simulating the upgrade",
    )


__all__ = [
    "CaptureSink",
    "Stage",
    "StageResult",
    "StageStatus",
    "UpgradePipeline",
    "apt_command",
    "pipeline_succeeded",
    "refresh_stages",
    "resync_stage",
    "run_cmd",
    "simulate_stage",
    "transition_stages",
]
