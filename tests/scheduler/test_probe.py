"""Tests for the host resource probe."""

from dataclasses import FrozenInstanceError
from unittest.mock import MagicMock, patch

import psutil
import pytest

from seqbatch.scheduler.probe import FALLBACK_HOST, cpu_reserve, probe, read_host
from seqbatch.schemas import HostTotals


class TestCpuReserve:
    """Tests for cpu_reserve bands."""

    def test_bands(self):
        """Small hosts keep every CPU, larger ones hold back 1 or 2."""
        assert cpu_reserve(2) == 0
        assert cpu_reserve(4) == 0
        assert cpu_reserve(5) == 1
        assert cpu_reserve(8) == 1
        assert cpu_reserve(9) == 2
        assert cpu_reserve(64) == 2


class TestProbe:
    """Tests for probe()."""

    def test_reserves_applied(self):
        """CPU and memory reserves come off the top."""
        budget = probe(host=HostTotals(cpus=32, total_memory_mib=65536, available_memory_mib=40000))

        assert budget.total_cpus == 32
        assert budget.reserved_cpus == 2
        assert budget.usable_cpus == 30
        assert budget.available_memory_mib == 40000
        assert budget.reserved_memory_mib == 4000
        assert budget.usable_memory_mib == 36000
        assert budget.fallback is False

    def test_parallel_batches_divide_before_reserve(self):
        """Each parallel batch takes its share, then applies reserves."""
        host = HostTotals(cpus=32, total_memory_mib=65536, available_memory_mib=40000)

        budget = probe(parallel_batches=2, host=host)

        assert budget.parallel_batches == 2
        assert budget.reserved_cpus == 2
        assert budget.usable_cpus == 14
        assert budget.available_memory_mib == 20000
        assert budget.usable_memory_mib == 18000

    def test_unknown_available_memory_uses_fraction_of_total(self):
        """Available memory falls back to 70% of total."""
        budget = probe(host=HostTotals(cpus=4, total_memory_mib=10000))

        assert budget.available_memory_mib == 7000
        assert budget.usable_memory_mib == 6300

    def test_minimum_two_usable_cpus(self):
        """A one-CPU share still yields two usable CPUs."""
        budget = probe(host=HostTotals(cpus=1, total_memory_mib=4096, available_memory_mib=4096))

        assert budget.usable_cpus == 2

    def test_fallback_when_introspection_fails(self, monkeypatch):
        """No host data means documented defaults, flagged, never fatal."""
        monkeypatch.setattr("seqbatch.scheduler.probe.read_host", lambda: None)

        budget = probe()

        assert budget.fallback is True
        assert budget.total_cpus == FALLBACK_HOST.cpus
        assert budget.total_memory_mib == 8192
        assert budget.available_memory_mib == 6144
        assert budget.usable_memory_mib == 6144 - 614

    def test_budget_is_immutable(self):
        """Budgets are frozen snapshots."""
        budget = probe(host=HostTotals(cpus=8, total_memory_mib=8192, available_memory_mib=8192))

        with pytest.raises(FrozenInstanceError):
            budget.usable_cpus = 100
        assert budget.usable_cpus == 7


class TestReadHost:
    """Tests for read_host()."""

    def test_reads_psutil(self):
        """A real host reports positive totals."""
        host = read_host()

        assert host is not None
        assert host.cpus >= 1
        assert host.total_memory_mib > 0

    def test_psutil_error_returns_none(self, monkeypatch):
        """Errors from psutil become None."""

        def broken(*args, **kwargs):
            raise OSError("no /proc")

        monkeypatch.setattr(psutil, "virtual_memory", broken)

        assert read_host() is None

    def test_zero_cpus_returns_none(self):
        """A host that reports no CPUs is treated as unknown."""
        with patch("seqbatch.scheduler.probe.psutil.cpu_count", return_value=None):
            assert read_host() is None

    def test_unknown_available_memory(self):
        """A missing available figure is passed on as None."""
        memory = MagicMock(total=16 * 1024**3, available=0)
        with patch("seqbatch.scheduler.probe.psutil.virtual_memory", return_value=memory):
            host = read_host()

        assert host.total_memory_mib == 16384
        assert host.available_memory_mib is None
