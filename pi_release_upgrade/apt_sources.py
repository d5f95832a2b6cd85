"""Helpers for dealing with apt sources files.

The upgrade needs to read and rewrite the entries in ``/etc/apt/sources.list``
and the accompanying ``sources.list.d`` snippets.  Two formats exist:

* the classic one-line format (``*.list``)::

      deb [arch=armhf] http://raspbian.raspberrypi.org/raspbian/ bookworm main

  where a leading ``#`` disables the entry;

* the deb822 format (``*.sources``), stanzas of ``Field: value`` lines where
  ``Enabled: no`` disables the stanza.

Parsing keeps the exact character span of every suite token, so a rewrite
can splice a new codename into the original text without touching anything
else on the line: whitespace, options, URIs and comments survive verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

ONE_LINE_SUFFIX = ".list"
DEB822_SUFFIX = ".sources"
SOURCE_SUFFIXES = (ONE_LINE_SUFFIX, DEB822_SUFFIX)
ENTRY_TYPES = ("deb", "deb-src")

_TOKEN_RE = re.compile(r"\S+")
_FIELD_RE = re.compile(r"^([A-Za-z][A-Za-z0-9-]*)\s*:(.*)$")
_DISABLED_VALUES = {"no", "false", "0", "off"}

Span = Tuple[int, int]


@dataclass(frozen=True)
class RepoEntry:
    """One repository definition inside a sources file.

    ``line_no`` and ``suite_span`` locate the suite (codename) token in the
    file so it can be replaced in place.
    """

    kind: str
    uri: str
    suite: str
    components: Tuple[str, ...]
    enabled: bool
    line_no: int
    suite_span: Span
    options: Tuple[str, ...] = ()

    @property
    def host(self) -> str:
        return urlsplit(self.uri).hostname or ""


@dataclass
class _Stanza:
    start: int
    end: int
    enabled_line: Optional[int] = None
    enabled: bool = True


@dataclass
class SourcesFile:
    """A parsed sources file: raw lines plus the entries found in them."""

    path: Path
    lines: List[str]
    entries: List[RepoEntry]
    deb822: bool = False
    stanzas: List[_Stanza] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.lines)

    @property
    def enabled_entries(self) -> List[RepoEntry]:
        return [entry for entry in self.entries if entry.enabled]


def is_deb822(path: Path) -> bool:
    return path.suffix == DEB822_SUFFIX


def parse_one_line(line: str, line_no: int) -> Optional[RepoEntry]:
    """Parse one line of a ``.list`` file, or return ``None`` for other lines."""

    body_start = len(line) - len(line.lstrip())
    enabled = True
    if line.startswith("#", body_start):
        enabled = False
        body_start += 1
        body_start += len(line[body_start:]) - len(line[body_start:].lstrip())

    tokens = [(m.group(0), m.span()) for m in _TOKEN_RE.finditer(line, body_start)]
    if not tokens or tokens[0][0] not in ENTRY_TYPES:
        return None

    kind = tokens[0][0]
    index = 1
    options: list[str] = []
    if index < len(tokens) and tokens[index][0].startswith("["):
        while index < len(tokens):
            token = tokens[index][0]
            options.append(token)
            index += 1
            if token.endswith("]"):
                break
    if index + 1 >= len(tokens):
        return None

    uri = tokens[index][0]
    suite, span = tokens[index + 1]
    if suite.startswith("#"):
        return None
    components: list[str] = []
    for token, _span in tokens[index + 2:]:
        if token.startswith("#"):
            break
        components.append(token)

    cleaned_options = tuple(o.strip("[]") for o in options if o.strip("[]"))
    return RepoEntry(
        kind=kind,
        uri=uri,
        suite=suite,
        components=tuple(components),
        enabled=enabled,
        line_no=line_no,
        suite_span=span,
        options=cleaned_options,
    )


def _parse_deb822(lines: Sequence[str]) -> Tuple[List[RepoEntry], List[_Stanza]]:
    entries: list[RepoEntry] = []
    stanzas: list[_Stanza] = []

    fields: Dict[str, str] = {}
    suites: list[tuple[str, int, Span]] = []
    stanza: Optional[_Stanza] = None
    current_field: Optional[str] = None

    def close(end: int) -> None:
        nonlocal stanza, fields, suites, current_field
        if stanza is not None:
            stanza.end = end
            stanzas.append(stanza)
            types = fields.get("types", "").split()
            uris = fields.get("uris", "").split()
            components = tuple(fields.get("components", "").split())
            for suite, line_no, span in suites:
                entries.append(
                    RepoEntry(
                        kind=" ".join(types),
                        uri=uris[0] if uris else "",
                        suite=suite,
                        components=components,
                        enabled=stanza.enabled,
                        line_no=line_no,
                        suite_span=span,
                    )
                )
        stanza = None
        fields = {}
        suites = []
        current_field = None

    for line_no, line in enumerate(lines):
        stripped = line.strip()
        if not stripped:
            close(line_no)
            continue
        if stripped.startswith("#"):
            continue
        if stanza is None:
            stanza = _Stanza(start=line_no, end=line_no)

        if line[0].isspace() and current_field is not None:
            fields[current_field] = fields.get(current_field, "") + " " + stripped
            if current_field == "suites":
                suites.extend((m.group(0), line_no, m.span()) for m in _TOKEN_RE.finditer(line))
            continue

        match = _FIELD_RE.match(line.rstrip("\r\n"))
        if not match:
            current_field = None
            continue
        current_field = match.group(1).lower()
        fields[current_field] = match.group(2).strip()
        if current_field == "suites":
            value_start = match.start(2)
            suites.extend(
                (m.group(0), line_no, m.span()) for m in _TOKEN_RE.finditer(line, value_start)
            )
        elif current_field == "enabled":
            stanza.enabled_line = line_no
            stanza.enabled = match.group(2).strip().lower() not in _DISABLED_VALUES
    close(len(lines))
    return entries, stanzas


def parse_sources(text: str, path: Path) -> SourcesFile:
    lines = text.splitlines(keepends=True)
    if is_deb822(path):
        entries, stanzas = _parse_deb822(lines)
        return SourcesFile(path=path, lines=lines, entries=entries, deb822=True, stanzas=stanzas)
    entries = [e for e in (parse_one_line(l, n) for n, l in enumerate(lines)) if e is not None]
    return SourcesFile(path=path, lines=lines, entries=entries)


def load_sources(path: Path) -> SourcesFile:
    # newline="" keeps CRLF line endings intact through a rewrite.
    with open(path, newline="") as handle:
        return parse_sources(handle.read(), path)


def replace_suites(sources: SourcesFile, entries: Iterable[RepoEntry], target: str) -> str:
    """Return the file text with the suite token of each entry set to *target*."""

    lines = list(sources.lines)
    by_line: Dict[int, list[Span]] = {}
    for entry in entries:
        by_line.setdefault(entry.line_no, []).append(entry.suite_span)
    for line_no, spans in by_line.items():
        line = lines[line_no]
        for start, end in sorted(set(spans), reverse=True):
            line = line[:start] + target + line[end:]
        lines[line_no] = line
    return "".join(lines)


def _line_ending(line: str) -> str:
    return line[len(line.rstrip("\r\n")):]


def disabled_text(sources: SourcesFile) -> str:
    """Return the file text with every enabled entry switched off."""

    lines = list(sources.lines)
    if not sources.deb822:
        for entry in sources.enabled_entries:
            line = lines[entry.line_no]
            indent = len(line) - len(line.lstrip())
            lines[entry.line_no] = line[:indent] + "# " + line[indent:]
        return "".join(lines)

    inserts: list[int] = []
    for stanza in sources.stanzas:
        if not stanza.enabled:
            continue
        if stanza.enabled_line is not None:
            old = lines[stanza.enabled_line]
            lines[stanza.enabled_line] = "Enabled: no" + _line_ending(old)
        else:
            inserts.append(stanza.start)
    for position in sorted(inserts, reverse=True):
        lines.insert(position, "Enabled: no" + (_line_ending(lines[position]) or "\n"))
    return "".join(lines)


def atomic_write_text(path: Path, text: str) -> None:
    """Replace *path* with *text* so readers never see a partial file.

    The content goes to a temporary file in the same directory which is
    flushed to disk and then renamed over the original.  The original's
    permission bits are kept.
    """

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def repository_files(sources_list: Path, sources_list_d: Path) -> List[Path]:
    """Return every repository definition file apt would read.

    Files in the drop-in directory with another suffix (``.disabled``,
    ``.save``, editor backups) are ignored, as apt ignores them.
    """

    files = [sources_list] if sources_list.is_file() else []
    return files + drop_in_files(sources_list_d)


def drop_in_files(sources_list_d: Path) -> List[Path]:
    if not sources_list_d.is_dir():
        return []
    return sorted(
        p for p in sources_list_d.iterdir() if p.is_file() and p.suffix in SOURCE_SUFFIXES
    )


def is_official_entry(entry: RepoEntry, official_hosts: Sequence[str]) -> bool:
    return entry.uri.startswith(("http://", "https://")) and entry.host in official_hosts


def find_third_party_files(
    sources_list_d: Path, official_hosts: Sequence[str]
) -> List[Path]:
    """Return drop-in files with enabled entries but none from an official host."""

    found: list[Path] = []
    for path in drop_in_files(sources_list_d):
        try:
            sources = load_sources(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not inspect %s: %s", path, exc)
            continue
        enabled = sources.enabled_entries
        if enabled and not any(is_official_entry(e, official_hosts) for e in enabled):
            logger.info("Third-party repository detected: %s", path)
            found.append(path)
    return found


__all__ = [
    "RepoEntry",
    "SourcesFile",
    "atomic_write_text",
    "disabled_text",
    "drop_in_files",
    "find_third_party_files",
    "is_official_entry",
    "load_sources",
    "parse_one_line",
    "parse_sources",
    "replace_suites",
    "repository_files",
]
