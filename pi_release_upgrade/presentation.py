"""Front-ends that show what the upgrade is doing and ask the operator.

The engine talks to exactly one :class:`Presentation`, chosen once at start
up by :func:`select_presentation`.  The engine behaves the same whichever one
is plugged in; :class:`LoggingPresentation` only writes to the log and answers
questions from a script, which is what the tests use.
"""

from __future__ import annotations

import importlib.util
import logging
import os
from typing import TYPE_CHECKING, Iterable, Iterator, Optional, Protocol

import click

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import StageResult

logger = logging.getLogger(__name__)


class Presentation(Protocol):
    def state_changed(self, old: str, new: str) -> None: ...

    def progress(self, fraction: float, label: str) -> None: ...

    def output(self, line: str) -> None: ...

    def stage_finished(self, result: "StageResult") -> None: ...

    def advisory(self, result: "StageResult") -> None: ...

    def info(self, title: str, message: str) -> None: ...

    def warning(self, title: str, message: str) -> None: ...

    def error(self, title: str, message: str) -> None: ...

    def confirm(self, title: str, question: str) -> bool: ...

    def show_text(self, title: str, text: str) -> None: ...


def advisory_message(result: "StageResult") -> str:
    kinds = ", ".join(result.scan.kinds)
    where = f" See {result.capture_path} for details." if result.capture_path else ""
    return f"'{result.name}' reported {result.severity.label} output ({kinds}).{where}"


class LoggingPresentation:
    """No-op front-end: everything goes to the log, answers come from a script.

    *answers* is consumed in order by :meth:`confirm`; once it runs out every
    further question is answered with *default*.
    """

    def __init__(self, answers: Optional[Iterable[bool]] = None, *, default: bool = False) -> None:
        self._answers: Iterator[bool] = iter(list(answers or []))
        self.default = default
        self.questions: list[str] = []
        self.states: list[str] = []

    def state_changed(self, old: str, new: str) -> None:
        self.states.append(new)
        logger.info("State: %s -> %s", old, new)

    def progress(self, fraction: float, label: str) -> None:
        logger.debug("Progress %d%% %s", int(round(fraction * 100)), label)

    def output(self, line: str) -> None:
        pass

    def stage_finished(self, result: "StageResult") -> None:
        logger.info("Stage %s: %s", result.name, result.status.value)

    def advisory(self, result: "StageResult") -> None:
        logger.warning(advisory_message(result))

    def info(self, title: str, message: str) -> None:
        logger.info("%s: %s", title, message)

    def warning(self, title: str, message: str) -> None:
        logger.warning("%s: %s", title, message)

    def error(self, title: str, message: str) -> None:
        logger.error("%s: %s", title, message)

    def confirm(self, title: str, question: str) -> bool:
        self.questions.append(title)
        answer = next(self._answers, self.default)
        logger.info("%s: %s -> %s", title, question, "yes" if answer else "no")
        return answer

    def show_text(self, title: str, text: str) -> None:
        logger.info("%s:\n%s", title, text)


class TextPresentation(LoggingPresentation):
    """Terminal front-end built on click."""

    def __init__(self, *, show_output: bool = True) -> None:
        super().__init__()
        self.show_output = show_output
        self._last_progress: tuple[int, str] = (-1, "")

    def progress(self, fraction: float, label: str) -> None:
        current = (int(round(fraction * 100)), label)
        if current != self._last_progress:
            click.secho(f"[{current[0]:3d}%] {label}", bold=True)
            self._last_progress = current

    def output(self, line: str) -> None:
        if self.show_output:
            click.echo(f"  {line}")

    def stage_finished(self, result: "StageResult") -> None:
        super().stage_finished(result)
        colour = {"ok": "green", "skipped": "yellow"}.get(result.status.value, "red")
        click.echo(click.style(f"{result.name}: {result.status.value}", fg=colour))

    def advisory(self, result: "StageResult") -> None:
        super().advisory(result)
        click.secho(f"WARNING: {advisory_message(result)}", fg="yellow", err=True)

    def info(self, title: str, message: str) -> None:
        super().info(title, message)
        click.echo(f"\n--- {title} ---\n{message}\n")

    def warning(self, title: str, message: str) -> None:
        super().warning(title, message)
        click.secho(f"\nWARNING: {title}\n{message}\n", fg="yellow", err=True)

    def error(self, title: str, message: str) -> None:
        super().error(title, message)
        click.secho(f"\nERROR: {title}\n{message}\n", fg="red", err=True)

    def confirm(self, title: str, question: str) -> bool:
        self.questions.append(title)
        click.echo(f"\n--- {title} ---")
        try:
            answer = click.confirm(question, default=False)
        except click.Abort:
            answer = False
        logger.info("%s: %s -> %s", title, question, "yes" if answer else "no")
        return answer

    def show_text(self, title: str, text: str) -> None:
        super().show_text(title, text)
        click.echo(f"\n--- {title} ---\n{text}\n--- end ---")


def gui_available() -> bool:
    """True when a display is reachable and PyGObject is installed."""

    if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
        return False
    return importlib.util.find_spec("gi") is not None


def select_presentation(prefer_gui: Optional[bool] = None) -> str:
    """Return ``"gtk"`` or ``"text"`` for this session.

    ``prefer_gui=None`` means auto-detect; ``False`` forces the terminal; an
    explicit ``True`` still falls back to the terminal when no display exists.
    """

    if prefer_gui is False:
        return "text"
    if gui_available():
        return "gtk"
    if prefer_gui:
        logger.warning("Graphical front-end requested but no display or PyGObject; using text")
    return "text"


__all__ = [
    "LoggingPresentation",
    "Presentation",
    "TextPresentation",
    "advisory_message",
    "gui_available",
    "select_presentation",
]
