"""Tests for JobRunner."""

import threading

import pytest

from seqbatch.errors import JobInputError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.scheduler.runner import EXIT_NOT_STARTED, CancellationToken, JobRunner, tail
from seqbatch.schemas import Tier

PARTIAL = 'echo partial > "$1/result.txt"; echo "killed" >&2; exit 137'


def make_profile(tier=Tier.PARALLEL, threads=2):
    return JobCostEstimator().profile(tier, threads, 0, 1024)


@pytest.fixture
def runner_for(tmp_path):
    def make(stage, **kwargs):
        kwargs.setdefault("poll_interval", 0.05)
        return JobRunner(stage, tmp_path / "logs", scratch_root=tmp_path / "scratch", **kwargs)

    return make


class TestSuccess:
    """Tests for successful attempts."""

    def test_success_with_output(self, fake_stage, study, runner_for):
        """Exit 0 plus complete output is a success."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is True
        assert result.returncode == 0
        assert result.cancelled is False
        assert (job.output_dir / "result.txt").read_text().strip() == "threads=2"

    def test_log_file_per_job_and_tier(self, fake_stage, study, runner_for):
        """Each attempt writes to <job>.<tier>.log."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]
        runner = runner_for(stage)

        result = runner.run(job, make_profile(Tier.SEQUENTIAL_MAX, 4))

        assert result.log_path == runner.logs_dir / "a.tier2.log"
        content = result.log_path.read_text()
        assert "=== a tier2: threads=4" in content
        assert "$ sh -c" in content

    def test_previous_output_removed_first(self, fake_stage, study, runner_for):
        """Stale files in the output directory do not survive a re-run."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]
        job.output_dir.mkdir(parents=True)
        (job.output_dir / "stale.txt").write_text("old")

        runner_for(stage).run(job, make_profile())

        assert not (job.output_dir / "stale.txt").exists()
        assert (job.output_dir / "result.txt").exists()

    def test_scratch_removed(self, fake_stage, study, runner_for, tmp_path):
        """Scratch space is gone after the attempt."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]

        runner_for(stage).run(job, make_profile())

        assert list((tmp_path / "scratch").iterdir()) == []


class TestFailure:
    """Tests for failed attempts."""

    def test_nonzero_exit_fails_and_keeps_tail(self, fake_stage, study, runner_for):
        """A failing command is reported with the end of its log."""
        stage = fake_stage(["a"], fail_tiers={"a": {1}})
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.returncode == 1
        assert result.detail == "sh exited with code 1"
        assert "boom: out of memory" in result.stderr_tail

    def test_partial_output_removed(self, fake_stage, study, runner_for):
        """Output written before a crash is cleaned up."""
        stage = fake_stage(["a"], fail_tiers={"a": {1}}, modes={"a": PARTIAL})
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.returncode == 137
        assert not job.output_dir.exists()

    def test_exit_zero_without_output_fails(self, fake_stage, study, runner_for):
        """A zero exit code is not enough."""
        stage = fake_stage(["a"], fail_tiers={"a": {1}}, modes={"a": "exit 0"})
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.returncode == 0
        assert result.detail == "primary output missing or empty"

    def test_missing_executable(self, fake_stage, study, runner_for):
        """A tool that cannot start is an ordinary failure."""

        class MissingTool(fake_stage):
            def commands(self, job, profile, scratch_dir, temp_dir=None):
                return [["seqbatch-no-such-tool-xyz"]]

        stage = MissingTool(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.returncode == EXIT_NOT_STARTED
        assert "cannot start" in result.log_path.read_text()

    def test_bad_inputs(self, fake_stage, study, runner_for):
        """JobInputError from the stage fails the attempt without running anything."""

        class BadInputs(fake_stage):
            def commands(self, job, profile, scratch_dir, temp_dir=None):
                raise JobInputError("No valid paired-end files found for a")

        stage = BadInputs(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.returncode is None
        assert result.detail == "No valid paired-end files found for a"

    def test_stops_at_first_failing_command(self, fake_stage, study, runner_for):
        """Later commands of the same attempt are not run."""

        class TwoSteps(fake_stage):
            def commands(self, job, profile, scratch_dir, temp_dir=None):
                marker = job.output_dir / "second.txt"
                return [["sh", "-c", "exit 2"], ["sh", "-c", f"touch {marker}"]]

        stage = TwoSteps(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.returncode == 2
        assert not (job.output_dir / "second.txt").exists()


class TestSetup:
    """Tests for preparing an attempt."""

    def test_stale_file_at_output_path(self, fake_stage, study, runner_for):
        """A regular file where the output directory belongs is replaced."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]
        job.output_dir.parent.mkdir(parents=True)
        job.output_dir.write_text("stale")

        result = runner_for(stage).run(job, make_profile())

        assert result.success is True
        assert (job.output_dir / "result.txt").exists()

    def test_unwritable_output_is_a_failed_attempt(self, fake_stage, study, runner_for):
        """A filesystem error while preparing does not raise."""

        class Blocked(fake_stage):
            def output_dir_for(self, study_path, job_id):
                return study_path / "blocker" / job_id

        (study / "blocker").write_text("not a directory")
        stage = Blocked(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is False
        assert result.cancelled is False
        assert result.returncode is None
        assert result.detail.startswith("setup failed:")
        assert stage.calls == []

    def test_temp_space_under_temp_root(self, fake_stage, study, runner_for, tmp_path):
        """Temporary space goes under the stage's temp root and is removed after."""
        seen = []

        class FastTemp(fake_stage):
            def temp_root(self, profile):
                return tmp_path / "ram"

            def commands(self, job, profile, scratch_dir, temp_dir=None):
                seen.append(temp_dir)
                return super().commands(job, profile, scratch_dir, temp_dir)

        stage = FastTemp(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is True
        assert seen[0].parent == tmp_path / "ram"
        assert seen[0].name.startswith("a.tier1.")
        assert list((tmp_path / "ram").iterdir()) == []

    def test_temp_space_inside_scratch_by_default(self, fake_stage, study, runner_for, tmp_path):
        """Without a temp root, temporary space is a directory in the job scratch."""
        seen = []

        class Recording(fake_stage):
            def commands(self, job, profile, scratch_dir, temp_dir=None):
                seen.append((scratch_dir, temp_dir))
                return super().commands(job, profile, scratch_dir, temp_dir)

        stage = Recording(["a"])
        job = stage.discover(study)[0]

        runner_for(stage).run(job, make_profile())

        scratch_dir, temp_dir = seen[0]
        assert temp_dir == scratch_dir / "tmp"
        assert scratch_dir.parent == tmp_path / "scratch"


class TestPeakMemory:
    """Tests for peak memory sampling."""

    def test_unavailable_is_none(self, fake_stage, study, runner_for, monkeypatch):
        """When the process cannot be inspected the peak stays None."""
        import psutil

        def no_process(pid):
            raise psutil.NoSuchProcess(pid)

        monkeypatch.setattr("seqbatch.scheduler.runner.psutil.Process", no_process)
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]

        result = runner_for(stage).run(job, make_profile())

        assert result.success is True
        assert result.peak_memory_mib is None
        assert "peak memory unavailable" in result.log_path.read_text()


class TestCancellation:
    """Tests for cancellation."""

    def test_cancelled_before_start(self, fake_stage, study, runner_for):
        """A cancelled token means the job never starts."""
        stage = fake_stage(["a"])
        job = stage.discover(study)[0]
        token = CancellationToken()
        token.cancel("test")

        result = runner_for(stage).run(job, make_profile(), token)

        assert result.cancelled is True
        assert result.returncode is None
        assert stage.calls == []

    def test_cancel_terminates_running_child(self, fake_stage, study, runner_for):
        """A running child is terminated and its output removed."""
        stage = fake_stage(["a"], fail_tiers={"a": {1}}, modes={"a": "sleep 30"})
        job = stage.discover(study)[0]
        token = CancellationToken()
        timer = threading.Timer(0.3, token.cancel)
        timer.start()

        try:
            result = runner_for(stage).run(job, make_profile(), token)
        finally:
            timer.cancel()

        assert result.cancelled is True
        assert result.success is False
        assert result.returncode is not None
        assert not job.output_dir.exists()


class TestTail:
    """Tests for tail()."""

    def test_last_lines(self, tmp_path):
        """Only the last lines are kept."""
        log = tmp_path / "x.log"
        log.write_text("".join(f"line {i}\n" for i in range(20)))

        assert tail(log, 3) == "line 17\nline 18\nline 19"

    def test_missing_file(self, tmp_path):
        """A missing log gives an empty string."""
        assert tail(tmp_path / "nope.log") == ""
