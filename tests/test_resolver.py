import pytest

from conftest import StaticCatalog
from pi_release_upgrade.errors import NetworkError, NoCompatibleReleaseError
from pi_release_upgrade.resolver import ReleaseResolver, resolve
from pi_release_upgrade.versioning import Catalog


def _catalog(*names: str) -> Catalog:
    return Catalog.from_iterable(names)


class TestResolve:
    def test_first_of_a_that_b_lists(self) -> None:
        assert resolve(_catalog("x", "y", "z"), _catalog("z", "y")) == "y"

    def test_order_of_b_is_irrelevant(self) -> None:
        assert resolve(_catalog("trixie", "bookworm"), _catalog("bookworm", "trixie")) == "trixie"

    def test_newest_shared_release(self) -> None:
        debian = _catalog("forky", "trixie", "bookworm", "bullseye")
        vendor = _catalog("bullseye", "bookworm", "trixie")
        assert resolve(debian, vendor) == "trixie"

    def test_empty_intersection(self) -> None:
        with pytest.raises(NoCompatibleReleaseError):
            resolve(_catalog("a", "b"), _catalog("c"))

    def test_empty_catalog(self) -> None:
        with pytest.raises(NoCompatibleReleaseError):
            resolve(_catalog(), _catalog("c"))


class TestReleaseResolver:
    def test_returns_both_catalogs(self) -> None:
        resolver = ReleaseResolver(StaticCatalog("trixie", "bookworm"), StaticCatalog("bookworm", "trixie"))
        resolution = resolver.resolve_target()
        assert resolution.target == "trixie"
        assert list(resolution.primary) == ["trixie", "bookworm"]
        assert list(resolution.secondary) == ["bookworm", "trixie"]

    def test_fetch_errors_propagate(self) -> None:
        resolver = ReleaseResolver(
            StaticCatalog(error=NetworkError("down")), StaticCatalog("bookworm")
        )
        with pytest.raises(NetworkError):
            resolver.resolve_target()
