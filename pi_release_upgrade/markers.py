"""Recognise trouble in apt-get output.

apt translates its messages, so every command the pipeline runs gets the
fixed locale in :data:`APT_ENV`; the patterns below are only valid for that
English output.  Bump :data:`MARKERS_VERSION` whenever a pattern changes so
logs can tell which rule set produced an advisory.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import re
from typing import Iterable, Tuple

MARKERS_VERSION = 1

APT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "NEEDRESTART_MODE": "a",
    "APT_LISTCHANGES_FRONTEND": "none",
    "LC_ALL": "C.UTF-8",
    "LANG": "C.UTF-8",
    "LANGUAGE": "C",
}


class Severity(enum.IntEnum):
    OK = 0
    WARNING = 1
    FAILED = 2

    @property
    def label(self) -> str:
        return {Severity.OK: "ok", Severity.WARNING: "warning-detected", Severity.FAILED: "failed"}[self]


@dataclass(frozen=True)
class Marker:
    kind: str
    severity: Severity
    pattern: re.Pattern[str]


MARKERS: Tuple[Marker, ...] = (
    Marker("unmet-dependencies", Severity.FAILED, re.compile(r"The following packages have unmet dependencies")),
    Marker("error", Severity.FAILED, re.compile(r"^(E|Err):")),
    Marker("dpkg-error", Severity.FAILED, re.compile(r"^dpkg: error")),
    Marker("held-back", Severity.WARNING, re.compile(r"The following packages have been kept back")),
    Marker("held-changed", Severity.WARNING, re.compile(r"The following held packages will be changed")),
    Marker("removed", Severity.WARNING, re.compile(r"The following packages will be REMOVED")),
    Marker("warning", Severity.WARNING, re.compile(r"^W:")),
)


@dataclass(frozen=True)
class MarkerMatch:
    kind: str
    severity: Severity
    line: str


@dataclass(frozen=True)
class OutputScan:
    severity: Severity
    matches: Tuple[MarkerMatch, ...] = ()

    @property
    def kinds(self) -> Tuple[str, ...]:
        seen: dict[str, None] = {}
        for match in self.matches:
            seen.setdefault(match.kind, None)
        return tuple(seen)


def scan_output(lines: Iterable[str]) -> OutputScan:
    """Return the worst severity found in *lines* and every matching line."""

    matches: list[MarkerMatch] = []
    for line in lines:
        text = line.strip()
        for marker in MARKERS:
            if marker.pattern.search(text):
                matches.append(MarkerMatch(marker.kind, marker.severity, text))
                break
    severity = max((m.severity for m in matches), default=Severity.OK)
    return OutputScan(severity=severity, matches=tuple(matches))


__all__ = [
    "APT_ENV",
    "MARKERS",
    "MARKERS_VERSION",
    "Marker",
    "MarkerMatch",
    "OutputScan",
    "Severity",
    "scan_output",
]
