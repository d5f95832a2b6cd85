from pathlib import Path

from pi_release_upgrade import presentation
from pi_release_upgrade.config import Settings
from pi_release_upgrade.presentation import LoggingPresentation, select_presentation


class TestSelectPresentation:
    def test_text_forced(self, monkeypatch) -> None:
        monkeypatch.setenv("DISPLAY", ":0")
        assert select_presentation(False) == "text"

    def test_no_display_means_text(self, monkeypatch) -> None:
        monkeypatch.delenv("DISPLAY", raising=False)
        monkeypatch.delenv("WAYLAND_DISPLAY", raising=False)
        assert select_presentation(None) == "text"
        assert select_presentation(True) == "text"

    def test_display_and_gi(self, monkeypatch) -> None:
        monkeypatch.setenv("WAYLAND_DISPLAY", "wayland-0")
        monkeypatch.setattr(presentation.importlib.util, "find_spec", lambda name: object())
        assert select_presentation(None) == "gtk"

    def test_display_without_gi(self, monkeypatch) -> None:
        monkeypatch.setenv("DISPLAY", ":0")
        monkeypatch.setattr(presentation.importlib.util, "find_spec", lambda name: None)
        assert select_presentation(True) == "text"


class TestLoggingPresentation:
    def test_scripted_answers_then_default(self) -> None:
        p = LoggingPresentation([True, False], default=True)
        assert [p.confirm("a", "?"), p.confirm("b", "?"), p.confirm("c", "?")] == [True, False, True]
        assert p.questions == ["a", "b", "c"]


class TestSettings:
    def test_environment_overrides(self) -> None:
        settings = Settings.from_environ(
            {
                "PI_RELEASE_UPGRADE_APT_DIR": "/tmp/apt",
                "PI_RELEASE_UPGRADE_BACKUP_ROOT": "/tmp/backups",
                "PI_RELEASE_UPGRADE_DEBIAN_FEED": "http://localhost/feed.json",
            }
        )
        assert settings.sources_list == Path("/tmp/apt/sources.list")
        assert settings.sources_list_d == Path("/tmp/apt/sources.list.d")
        assert settings.backup_root == Path("/tmp/backups")
        assert settings.debian_feed_url == "http://localhost/feed.json"

    def test_defaults(self) -> None:
        settings = Settings.from_environ({})
        assert settings.sources_list == Path("/etc/apt/sources.list")
        assert settings.backup_root == Path("/var/backups")
