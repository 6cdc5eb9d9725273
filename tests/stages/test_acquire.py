"""Tests for the read acquisition stage."""

import pytest

from seqbatch.errors import DiscoveryError, JobInputError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import Job, Tier
from seqbatch_stages import acquire
from seqbatch_stages.acquire import AcquireStage, buffer_sizes, read_run_mapping


def profile(tier=Tier.PARALLEL, threads=2, ceiling=4096):
    return JobCostEstimator().profile(tier, threads, 0, ceiling)


def write_mapping(study, rows):
    path = study / "run_mapping.tsv"
    path.write_text("sample\trun\n" + "".join(f"{s}\t{r}\n" for s, r in rows))
    return path


class TestRunMapping:
    """Tests for read_run_mapping."""

    def test_groups_runs_by_sample(self, study):
        """Runs keep file order and duplicates are dropped."""
        path = write_mapping(study, [("S1", "SRR1"), ("S2", "SRR3"), ("S1", "SRR2"), ("S1", "SRR1")])

        assert read_run_mapping(path) == {"S1": ["SRR1", "SRR2"], "S2": ["SRR3"]}

    def test_malformed_lines_skipped(self, study):
        """Lines without a run are ignored."""
        path = study / "run_mapping.tsv"
        path.write_text("# comment\nS1\tSRR1\nS2\n\n")

        assert read_run_mapping(path) == {"S1": ["SRR1"]}

    def test_missing_file(self, study):
        """No mapping is a discovery error."""
        with pytest.raises(DiscoveryError):
            read_run_mapping(study / "run_mapping.tsv")


class TestBuffers:
    """Tests for fasterq-dump buffer sizing."""

    def test_scaled_and_clamped(self):
        """Buffers scale with the ceiling within fixed bounds."""
        assert buffer_sizes(8192) == {"bufsize": 819, "curcache": 409}
        assert buffer_sizes(1024) == {"bufsize": 256, "curcache": 128}
        assert buffer_sizes(200000) == {"bufsize": 4096, "curcache": 2048}

    def test_minimal(self):
        """Reduced fidelity uses the smallest buffers."""
        assert buffer_sizes(200000, minimal=True) == {"bufsize": 256, "curcache": 128}


class TestCommands:
    """Tests for the acquisition command chain."""

    def test_three_steps_per_run(self, study, tmp_path):
        """prefetch, fasterq-dump and compression run for each run."""
        write_mapping(study, [("S1", "SRR1"), ("S1", "SRR2")])
        stage = AcquireStage(ngc_file=str(tmp_path / "key.ngc"))
        job = stage.discover(study)[0]
        scratch = tmp_path / "scratch"

        commands = stage.commands(job, profile(ceiling=8192), scratch)

        assert [c[0] for c in commands] == ["prefetch", "fasterq-dump", "bash"] * 2
        prefetch = commands[0]
        assert prefetch[:2] == ["prefetch", "SRR1"]
        assert prefetch[prefetch.index("--ngc") + 1] == str(tmp_path / "key.ngc")
        assert prefetch[-2:] == ["--max-size", "u"]
        dump = commands[1]
        assert dump[1] == str(scratch / "sra" / "SRR1")
        assert "--split-3" in dump
        assert dump[dump.index("--mem") + 1] == "8192M"
        assert dump[dump.index("--bufsize") + 1] == "819MB"
        assert commands[2][-1] == str(job.output_dir)

    def test_no_runs(self, study, tmp_path):
        """A job without runs cannot be built."""
        job = Job(job_id="S1", output_dir=study / "Raw_data" / "S1")

        with pytest.raises(JobInputError):
            AcquireStage().commands(job, profile(), tmp_path)


class TestTempSpace:
    """Tests for RAM-disk temp space and the parallelism cap."""

    def test_ram_disk_when_available(self, monkeypatch):
        """Standard tiers put extraction temp space on the RAM disk."""
        monkeypatch.setattr(acquire, "ram_disk_usable", lambda: True)

        assert AcquireStage().temp_root(profile()) == acquire.RAM_DISK / "seqbatch"

    def test_disk_in_minimal_mode(self, monkeypatch):
        """Reduced fidelity never uses the RAM disk."""
        monkeypatch.setattr(acquire, "ram_disk_usable", lambda: True)

        assert AcquireStage().temp_root(profile(Tier.MINIMAL_FOOTPRINT)) is None

    def test_disk_without_ram_disk(self, monkeypatch):
        """No usable RAM disk keeps temp space in disk scratch."""
        monkeypatch.setattr(acquire, "ram_disk_usable", lambda: False)

        assert AcquireStage().temp_root(profile()) is None

    def test_only_temp_on_ram_disk(self, study, tmp_path):
        """Downloads and extracted reads stay in disk scratch."""
        write_mapping(study, [("S1", "SRR1")])
        stage = AcquireStage()
        job = stage.discover(study)[0]
        scratch = tmp_path / "scratch"
        ram = tmp_path / "shm" / "S1.tier1.x"

        prefetch, dump, _compress = stage.commands(job, profile(), scratch, ram)

        assert prefetch[prefetch.index("--output-directory") + 1] == str(scratch / "sra")
        assert dump[dump.index("--outdir") + 1] == str(scratch / "fastq" / "SRR1")
        assert dump[dump.index("--temp") + 1] == str(ram / "SRR1")

    def test_cap_from_free_space(self, monkeypatch):
        """One job per 10 GiB of free RAM disk, at least one."""
        monkeypatch.setattr(acquire, "ram_disk_free_mib", lambda: 32 * 1024)
        assert AcquireStage().parallel_job_cap() == 3

        monkeypatch.setattr(acquire, "ram_disk_free_mib", lambda: 4096)
        assert AcquireStage().parallel_job_cap() == 1

    def test_no_cap_without_ram_disk(self, monkeypatch):
        """Disk temp space does not limit parallelism."""
        monkeypatch.setattr(acquire, "ram_disk_free_mib", lambda: None)
        assert AcquireStage().parallel_job_cap() is None

        monkeypatch.setattr(acquire, "ram_disk_free_mib", lambda: 1024)
        assert AcquireStage().parallel_job_cap() is None


class TestOutput:
    """Tests for output completeness."""

    def test_paired_or_single_output(self, study):
        """Either R1 or a single-end file counts for a run."""
        write_mapping(study, [("S1", "SRR1"), ("S1", "SRR2")])
        stage = AcquireStage()
        job = stage.discover(study)[0]
        job.output_dir.mkdir(parents=True)

        (job.output_dir / "SRR1_1.fastq.gz").write_bytes(b"x")
        assert not stage.output_complete(job)
        (job.output_dir / "SRR2.fastq.gz").write_bytes(b"x")
        assert stage.output_complete(job)
