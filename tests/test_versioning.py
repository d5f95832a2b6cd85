from pi_release_upgrade.versioning import (
    Catalog,
    first_shared,
    get_current_codename,
    parse_debian_version_codename,
    parse_os_release_codename,
)


class TestCatalog:
    def test_order_is_preserved_and_duplicates_dropped(self) -> None:
        catalog = Catalog.from_iterable(["trixie", "bookworm", "trixie", "bullseye"])
        assert list(catalog) == ["trixie", "bookworm", "bullseye"]

    def test_blank_names_are_ignored(self) -> None:
        catalog = Catalog.from_iterable([" trixie ", "", "   "])
        assert catalog.codenames == ("trixie",)

    def test_membership_is_exact(self) -> None:
        catalog = Catalog.from_iterable(["bookworm"])
        assert "bookworm" in catalog
        assert "Bookworm" not in catalog
        assert "bookworm-updates" not in catalog

    def test_empty_catalog_is_falsy(self) -> None:
        assert not Catalog.from_iterable([])
        assert len(Catalog.from_iterable(["a", "b"])) == 2


class TestCurrentCodename:
    def test_reads_version_codename(self) -> None:
        text = 'PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\nVERSION_CODENAME=bookworm\n'
        assert parse_os_release_codename(text) == "bookworm"

    def test_quoted_version_codename(self) -> None:
        assert parse_os_release_codename('VERSION_CODENAME="trixie"\n') == "trixie"

    def test_missing_version_codename(self) -> None:
        assert parse_os_release_codename('ID=debian\n') is None

    def test_debian_version_word(self) -> None:
        assert parse_debian_version_codename("trixie/sid\n") == "sid"
        assert parse_debian_version_codename("12.5\n") is None

    def test_falls_back_to_debian_version(self, tmp_path) -> None:
        os_release = tmp_path / "os-release"
        os_release.write_text("ID=debian\n")
        debian_version = tmp_path / "debian_version"
        debian_version.write_text("bookworm/sid\n")
        assert get_current_codename(os_release, debian_version) == "sid"

    def test_unknown_when_nothing_readable(self, tmp_path) -> None:
        assert get_current_codename(tmp_path / "nope", tmp_path / "nada") is None


class TestFirstShared:
    def test_first_of_preferred_wins(self) -> None:
        assert first_shared(["x", "y", "z"], ["z", "y"]) == "y"

    def test_none_when_disjoint(self) -> None:
        assert first_shared(["a"], ["b"]) is None
