"""Helpers for reasoning about distribution codenames.

Debian-derived distributions name their releases with short words
(``bullseye``, ``bookworm``, ``trixie``).  The names carry no ordering of their
own, so the only order the tool ever trusts is the order in which a catalog
lists them: most recent first.  This module holds the :class:`Catalog` type
that preserves that order and the lookup of the codename the running system
is on.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_VERSION_CODENAME_RE = re.compile(r"^VERSION_CODENAME=[\"']?([^\"'\s]+)", re.MULTILINE)
_WORD_RE = re.compile(r"[a-z]+")


def _deduplicate_preserving_order(codenames: Iterable[str]) -> Iterator[str]:
    """Yield unique codenames while preserving their first occurrence order."""

    seen: set[str] = set()
    for item in codenames:
        if item not in seen:
            seen.add(item)
            yield item


@dataclass(frozen=True)
class Catalog:
    """An ordered, immutable list of codenames from one information source.

    The first element is the most recent release.  Membership tests are exact
    string comparisons; ``Bookworm`` and ``bookworm`` are different codenames.
    """

    codenames: Tuple[str, ...]
    source: str = ""

    @classmethod
    def from_iterable(cls, codenames: Iterable[str], source: str = "") -> "Catalog":
        cleaned = (name.strip() for name in codenames)
        return cls(tuple(_deduplicate_preserving_order(n for n in cleaned if n)), source)

    def __iter__(self) -> Iterator[str]:
        return iter(self.codenames)

    def __len__(self) -> int:
        return len(self.codenames)

    def __contains__(self, codename: object) -> bool:
        return codename in self.codenames

    def __bool__(self) -> bool:
        return bool(self.codenames)

    def as_set(self) -> frozenset[str]:
        return frozenset(self.codenames)


def parse_os_release_codename(text: str) -> Optional[str]:
    """Return ``VERSION_CODENAME`` from the text of ``/etc/os-release``."""

    match = _VERSION_CODENAME_RE.search(text)
    return match.group(1) if match else None


def parse_debian_version_codename(text: str) -> Optional[str]:
    """Return the last lowercase word of ``/etc/debian_version``.

    Testing systems write values such as ``trixie/sid`` there; stable systems
    write a number, in which case there is nothing to extract.
    """

    words = _WORD_RE.findall(text)
    return words[-1] if words else None


def get_current_codename(
    os_release: Path = Path("/etc/os-release"),
    debian_version: Path = Path("/etc/debian_version"),
) -> Optional[str]:
    """Return the codename of the running system, or ``None`` if unknown."""

    try:
        codename = parse_os_release_codename(os_release.read_text())
    except OSError as exc:
        logger.warning("Could not read %s: %s", os_release, exc)
        codename = None
    if codename:
        return codename

    logger.warning("No VERSION_CODENAME in %s; trying %s", os_release, debian_version)
    try:
        return parse_debian_version_codename(debian_version.read_text())
    except OSError as exc:
        logger.error("Could not read %s: %s", debian_version, exc)
        return None


def first_shared(preferred: Sequence[str], allowed: Iterable[str]) -> Optional[str]:
    """Return the first item of *preferred* that also appears in *allowed*."""

    allowed_set = set(allowed)
    for candidate in preferred:
        if candidate in allowed_set:
            return candidate
    return None


__all__ = [
    "Catalog",
    "first_shared",
    "get_current_codename",
    "parse_debian_version_codename",
    "parse_os_release_codename",
]
