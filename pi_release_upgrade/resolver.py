"""Pick the release a major upgrade should move to."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from .catalogs import VersionCatalogClient
from .errors import NoCompatibleReleaseError
from .versioning import Catalog, first_shared

logger = logging.getLogger(__name__)


def resolve(catalog_a: Catalog, catalog_b: Catalog) -> str:
    """Return the newest codename of *catalog_a* that *catalog_b* also lists.

    *catalog_a* decides the order; *catalog_b* only filters.  With
    ``catalog_a = [x, y, z]`` and ``catalog_b = [z, y]`` the answer is ``y``.

    Raises
    ------
    NoCompatibleReleaseError
        If the catalogs share no codename.
    """

    target = first_shared(catalog_a.codenames, catalog_b.codenames)
    if target is None:
        raise NoCompatibleReleaseError(
            "No codename is listed by both "
            f"{catalog_a.source or 'the primary catalog'} and "
            f"{catalog_b.source or 'the secondary catalog'}"
        )
    return target


@dataclass(frozen=True)
class Resolution:
    target: str
    primary: Catalog
    secondary: Catalog


class ReleaseResolver:
    """Fetch both catalogs and intersect them.

    The primary client is the upstream release feed (authoritative order), the
    secondary is the vendor archive listing (filter only).
    """

    def __init__(self, primary: VersionCatalogClient, secondary: VersionCatalogClient) -> None:
        self.primary = primary
        self.secondary = secondary

    def resolve_target(self) -> Resolution:
        primary = self.primary.fetch()
        secondary = self.secondary.fetch()
        target = resolve(primary, secondary)
        logger.info("Compatible target codename detected: %s", target)
        return Resolution(target=target, primary=primary, secondary=secondary)


__all__ = ["ReleaseResolver", "Resolution", "resolve"]
