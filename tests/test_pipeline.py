from datetime import datetime
import shlex

from conftest import FakeRunner
from pi_release_upgrade.markers import APT_ENV, Severity
from pi_release_upgrade.pipeline import (
    CaptureSink,
    Stage,
    StageStatus,
    UpgradePipeline,
    apt_command,
    pipeline_succeeded,
    refresh_stages,
    run_cmd,
    transition_stages,
)


def _stage(name, **kwargs):
    return Stage(name, ("cmd", name), **kwargs)


class TestSequencing:
    def test_fatal_failure_skips_the_rest(self) -> None:
        runner = FakeRunner({"a": (100, ["E: broken"])})
        results = UpgradePipeline(runner=runner).run([_stage("a"), _stage("b"), _stage("c")])
        assert [r.status for r in results] == [StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.SKIPPED]
        assert runner.calls == [["cmd", "a"]]
        assert not pipeline_succeeded(results)

    def test_non_fatal_failure_continues(self) -> None:
        runner = FakeRunner({"b": (1, [])})
        results = UpgradePipeline(runner=runner).run(
            [_stage("a"), _stage("b", continue_on_failure=True), _stage("c")]
        )
        assert [r.status for r in results] == [StageStatus.OK, StageStatus.FAILED_NON_FATAL, StageStatus.OK]
        assert [r.returncode for r in results] == [0, 1, 0]
        assert pipeline_succeeded(results)

    def test_cancel_before_run_skips_everything(self) -> None:
        runner = FakeRunner()
        pipeline = UpgradePipeline(runner=runner)
        pipeline.cancel()
        results = pipeline.run([_stage("a"), _stage("b")])
        assert [r.status for r in results] == [StageStatus.SKIPPED, StageStatus.SKIPPED]
        assert pipeline.cancelled
        assert runner.calls == []

    def test_cancel_between_stages(self) -> None:
        pipeline = UpgradePipeline()

        def runner(cmd, env=None, timeout=None, on_line=None, log_output=True):
            pipeline.cancel()
            return 0, []

        pipeline.runner = runner
        results = pipeline.run([_stage("a"), _stage("b")])
        assert [r.status for r in results] == [StageStatus.OK, StageStatus.SKIPPED]

    def test_fixed_locale_passed_to_runner(self) -> None:
        runner = FakeRunner()
        UpgradePipeline(runner=runner).run([_stage("a")])
        assert runner.envs[0] == APT_ENV


class TestProgress:
    def test_progress_is_monotonic_and_complete(self) -> None:
        seen = []
        pipeline = UpgradePipeline(runner=FakeRunner(), progress_callback=lambda f, label: seen.append(f))
        pipeline.run([_stage("a", weight=2), _stage("b", weight=6), _stage("c", weight=1)])
        assert seen == sorted(seen)
        assert seen[-1] == 1.0
        assert pipeline.progress[0] == 1.0

    def test_labels(self) -> None:
        labels = []
        pipeline = UpgradePipeline(runner=FakeRunner(), progress_callback=lambda f, label: labels.append(label))
        pipeline.run([_stage("a", label="First")])
        assert labels == ["Step 1/1: First", "First done"]


class TestOutput:
    def test_capture_file_collects_every_stage(self, tmp_path) -> None:
        sink = CaptureSink.in_directory(tmp_path, datetime(2025, 6, 15, 10, 30, 0))
        runner = FakeRunner({"a": (0, ["line one"]), "b": (0, ["line two"])})
        results = UpgradePipeline(runner=runner, sink=sink).run([_stage("a"), _stage("b")])
        assert sink.path.name == "rpios-apt-output-2025-06-15-103000.log"
        text = sink.path.read_text()
        assert "line one" in text and "line two" in text
        assert results[0].capture_path == sink.path

    def test_advisory_on_warning_markers(self) -> None:
        advisories = []
        runner = FakeRunner({"a": (0, ["The following packages have been kept back:"])})
        results = UpgradePipeline(runner=runner, advisory_callback=advisories.append).run([_stage("a")])
        assert results[0].status is StageStatus.OK
        assert results[0].severity is Severity.WARNING
        assert advisories == [results[0]]

    def test_output_callback_streams_lines(self) -> None:
        lines = []
        runner = FakeRunner({"a": (0, ["x", "y"])})
        UpgradePipeline(runner=runner, output_callback=lines.append).run([_stage("a")])
        assert lines == ["x", "y"]


class TestStageBuilders:
    def test_apt_command_is_non_interactive(self) -> None:
        cmd = apt_command("update")
        assert cmd[:2] == ["/usr/bin/apt-get", "-y"]
        assert "Dpkg::Options::=--force-confold" in cmd
        assert cmd[-1] == "update"

    def test_transition_stages(self) -> None:
        stages = transition_stages("trixie")
        assert [s.name for s in stages] == ["update", "full-upgrade", "autoremove"]
        assert [s.continue_on_failure for s in stages] == [False, False, True]

    def test_refresh_stages(self) -> None:
        stages = refresh_stages()
        assert [s.argv[-1] for s in stages] == ["update", "upgrade", "autoremove"]


class FullDiskSink(CaptureSink):
    def write(self, line: str) -> None:
        raise OSError(28, "No space left on device")


def _finishing_script(marker, lines=5):
    return f"for i in $(seq 1 {lines}); do echo line$i; sleep 0.05; done; echo done > {shlex.quote(str(marker))}"


class TestRunCmd:
    def test_merges_stderr_and_returns_exit_status(self) -> None:
        rc, lines = run_cmd(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert rc == 3
        assert sorted(lines) == ["err", "out"]

    def test_missing_program(self, tmp_path) -> None:
        seen = []
        rc, lines = run_cmd([str(tmp_path / "no-such-program")], on_line=seen.append)
        assert rc == 127
        assert lines == seen

    def test_failing_callback_does_not_stop_the_child(self, tmp_path) -> None:
        marker = tmp_path / "finished"

        def on_line(line):
            raise OSError(28, "No space left on device")

        rc, lines = run_cmd(["sh", "-c", _finishing_script(marker)], on_line=on_line)
        assert rc == 0
        assert lines == [f"line{i}" for i in range(1, 6)]
        assert marker.read_text() == "done\n"

    def test_undecodable_output_is_replaced(self) -> None:
        rc, lines = run_cmd(["sh", "-c", "printf 'caf\\377\\n'"])
        assert rc == 0
        assert lines == ["caf\ufffd"]


class TestCaptureFailures:
    def test_full_disk_keeps_the_stage_running(self, tmp_path) -> None:
        marker = tmp_path / "finished"
        streamed = []
        pipeline = UpgradePipeline(
            runner=run_cmd,
            sink=FullDiskSink(tmp_path / "capture.log"),
            output_callback=streamed.append,
        )
        results = pipeline.run([Stage("full-upgrade", ("sh", "-c", _finishing_script(marker, lines=8)))])
        assert results[0].status is StageStatus.OK
        assert marker.read_text() == "done\n"
        assert streamed == [f"line{i}" for i in range(1, 9)]
        assert pipeline.capture_failed
        assert results[0].capture_path is None

    def test_unusable_capture_directory(self, tmp_path) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        runner = FakeRunner({"a": (0, ["line one"])})
        pipeline = UpgradePipeline(runner=runner, sink=CaptureSink.in_directory(blocker))
        results = pipeline.run([_stage("a"), _stage("b")])
        assert [r.status for r in results] == [StageStatus.OK, StageStatus.OK]
        assert pipeline.capture_failed
