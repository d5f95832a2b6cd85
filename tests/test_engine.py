import pytest

from conftest import FakeRunner, ScriptedPreflight, StaticCatalog, snapshot_tree
from pi_release_upgrade import exit_codes
from pi_release_upgrade.engine import UpgradeEngine, run_lock
from pi_release_upgrade.errors import AlreadyRunningError, NetworkError
from pi_release_upgrade.pipeline import APT_GET
from pi_release_upgrade.preflight import PowerState
from pi_release_upgrade.presentation import LoggingPresentation
from pi_release_upgrade.resolver import ReleaseResolver


def _engine(settings, runner, answers=(), *, resolver=None, root=True, **preflight):
    settings.os_release_path.write_text("VERSION_CODENAME=bookworm\n")
    presentation = LoggingPresentation(answers)
    engine = UpgradeEngine(
        settings,
        presentation,
        runner=runner,
        preflight=ScriptedPreflight(settings, runner, root=root, **preflight),
        resolver=resolver or ReleaseResolver(StaticCatalog("trixie", "bookworm"), StaticCatalog("bookworm", "trixie")),
    )
    return engine, presentation


def _stage_calls(runner):
    return [c[-1] for c in runner.calls if "-y" in c]


class TestMajorTransition:
    def test_success_offers_reboot(self, settings, apt_dir) -> None:
        runner = FakeRunner()
        engine, presentation = _engine(settings, runner, [False, True, False])
        assert engine.major_transition() == exit_codes.SUCCESS
        assert presentation.questions == ["Simulate first", "Major upgrade", "Reboot"]
        assert "trixie" in (apt_dir / "sources.list").read_text()
        assert ["systemctl", "reboot"] not in runner.calls

    def test_reboot_accepted(self, settings) -> None:
        runner = FakeRunner()
        engine, _ = _engine(settings, runner, [False, True, True])
        engine.major_transition()
        assert runner.calls[-1] == ["systemctl", "reboot"]

    def test_declined_changes_nothing(self, settings, apt_dir) -> None:
        before = snapshot_tree(apt_dir)
        engine, _ = _engine(settings, FakeRunner(), [False, False])
        assert engine.major_transition() == exit_codes.SUCCESS
        assert snapshot_tree(apt_dir) == before
        assert not settings.backup_root.exists()

    def test_already_on_target(self, settings, apt_dir) -> None:
        engine, presentation = _engine(settings, FakeRunner())
        settings.os_release_path.write_text("VERSION_CODENAME=trixie\n")
        assert engine.major_transition() == exit_codes.SUCCESS
        assert presentation.questions == []

    def test_resolution_failure(self, settings) -> None:
        resolver = ReleaseResolver(StaticCatalog(error=NetworkError("offline")), StaticCatalog("trixie"))
        engine, _ = _engine(settings, FakeRunner(), resolver=resolver)
        assert engine.major_transition() == exit_codes.FAILURE

    def test_failure_then_restore(self, settings, apt_dir) -> None:
        before = snapshot_tree(apt_dir)
        runner = FakeRunner({"full-upgrade": (100, ["E: Unmet dependencies"])})
        engine, presentation = _engine(settings, runner, [False, True, True])
        assert engine.major_transition() == exit_codes.FAILURE
        assert presentation.questions == ["Simulate first", "Major upgrade", "Restore repository configuration?"]
        assert snapshot_tree(apt_dir) == before

    def test_simulation_on_request(self, settings, apt_dir) -> None:
        runner = FakeRunner({"full-upgrade": (0, ["Inst libc6 [2.36-9] (2.41-12 Debian:13)"])})
        engine, presentation = _engine(settings, runner, [True, False])
        assert engine.major_transition() == exit_codes.SUCCESS
        assert [APT_GET, "--simulate", "full-upgrade"] in runner.calls
        assert presentation.questions == ["Simulate first", "Major upgrade"]
        assert "bookworm" in (apt_dir / "sources.list").read_text()

    def test_simulation_skipped_when_declined(self, settings) -> None:
        runner = FakeRunner()
        engine, _ = _engine(settings, runner, [False, False])
        engine.major_transition()
        assert [APT_GET, "--simulate", "full-upgrade"] not in runner.calls

    def test_not_root(self, settings) -> None:
        engine, _ = _engine(settings, FakeRunner(), root=False)
        assert engine.major_transition() == exit_codes.PERMISSION_ERROR


class TestRefresh:
    def test_refresh_runs_three_stages(self, settings, apt_dir) -> None:
        runner = FakeRunner()
        before = snapshot_tree(apt_dir)
        engine, _ = _engine(settings, runner)
        assert engine.refresh_packages() == exit_codes.SUCCESS
        assert _stage_calls(runner) == ["update", "upgrade", "autoremove"]
        assert snapshot_tree(apt_dir) == before

    def test_preflight_runs_first(self, settings) -> None:
        runner = FakeRunner()
        engine, _ = _engine(settings, runner, free=0)
        assert engine.refresh_packages() == exit_codes.FAILURE
        assert _stage_calls(runner) == []
        assert runner.ran("dist-upgrade")

    def test_low_battery_declined(self, settings) -> None:
        runner = FakeRunner()
        engine, presentation = _engine(
            settings, runner, [False], power=PowerState(on_battery=True, percentage=10, charging=False)
        )
        assert engine.refresh_packages() == exit_codes.SUCCESS
        assert presentation.questions == ["Low battery"]
        assert _stage_calls(runner) == []

    def test_third_party_repositories_left_alone(self, settings, apt_dir) -> None:
        third = apt_dir / "sources.list.d" / "vendor.list"
        third.write_text("deb https://packages.vendor.example/ stable main\n")
        engine, presentation = _engine(settings, FakeRunner(), third_party=[third])
        assert engine.refresh_packages() == exit_codes.SUCCESS
        assert presentation.questions == []
        assert third.read_text().startswith("deb ")

    def test_cancel_between_stages(self, settings) -> None:
        class Runner(FakeRunner):
            engine = None

            def __call__(self, cmd, **kwargs):
                if "-y" in cmd and cmd[-1] == "update":
                    self.engine.cancel()
                return super().__call__(cmd, **kwargs)

        runner = Runner()
        engine, _ = _engine(settings, runner)
        runner.engine = engine
        assert engine.refresh_packages() == exit_codes.SUCCESS
        assert _stage_calls(runner) == ["update"]

    def test_refresh_failure(self, settings) -> None:
        engine, _ = _engine(settings, FakeRunner({"update": (100, [])}))
        assert engine.refresh_packages() == exit_codes.FAILURE

    def test_lock_held_elsewhere(self, settings) -> None:
        runner = FakeRunner()
        engine, _ = _engine(settings, runner)
        with run_lock(settings.lock_path):
            assert engine.refresh_packages() == exit_codes.FAILURE
        assert runner.calls == []


class TestRunLock:
    def test_second_holder_is_refused(self, tmp_path) -> None:
        path = tmp_path / "upgrade.lock"
        with run_lock(path):
            with pytest.raises(AlreadyRunningError):
                with run_lock(path):
                    pass
        with run_lock(path):
            pass


class TestRestoreBackup:
    def test_restore_and_resync(self, settings, apt_dir) -> None:
        runner = FakeRunner()
        engine, _ = _engine(settings, runner)
        before = snapshot_tree(apt_dir)
        backup = engine.store.snapshot()
        (apt_dir / "sources.list").write_text("deb http://x trixie main\n")
        assert engine.restore_backup(backup.path) == exit_codes.SUCCESS
        assert snapshot_tree(apt_dir) == before
        assert runner.calls[-1][-1] == "update"

    def test_not_a_backup(self, settings, tmp_path) -> None:
        engine, _ = _engine(settings, FakeRunner())
        assert engine.restore_backup(tmp_path) == exit_codes.FAILURE
