"""
Mitigation controller tests: thermal hysteresis, memory trigger modes and the
observational utilization checks.
"""

from pathlib import Path
from unittest import mock

import pytest

from edge_governor.actions import FrequencyGovernor, ProcessTable
from edge_governor.config import GovernorConfig
from edge_governor.logsink import LogSink
from edge_governor.mitigation import (
    MemoryController,
    MitigationController,
    MitigationState,
    ThermalController,
    UtilizationCheck,
)
from edge_governor.telemetry import CPU_GOVERNOR, GPU_GOVERNOR, Sample, TelemetrySource

from sysfs_fixtures import make_sysfs, process_table, read_governor, read_log, write


@pytest.fixture
def root(tmp_path):
    return make_sysfs(
        tmp_path / "sysroot",
        gpu_freq_hz=1_300_500_000,
        zones=[("CPU-therm", 50000), ("GPU-therm", 60000)],
        gpu_governor="simple_ondemand",
        cpu_governor="ondemand",
    )


@pytest.fixture
def sink(tmp_path):
    s = LogSink(tmp_path / "logs" / "resource-usage.log")
    yield s
    s.close()


@pytest.fixture
def gpu_governor(root):
    return FrequencyGovernor("GPU", root / GPU_GOVERNOR, "simple_ondemand")


@pytest.fixture
def gpu_thermal(root, sink, gpu_governor):
    telemetry = TelemetrySource(str(root))
    return ThermalController(
        "GPU", sink, gpu_governor, throttle_temp_c=80,
        zone_dump=telemetry.thermal_zones, frequency=telemetry.gpu_frequency,
    )


def make_sample(**fields):
    values = dict(
        timestamp=0.0,
        memory_used_mb=2000,
        memory_total_mb=8000,
        cpu_busy_pct=10,
        gpu_load_pct=10,
        gpu_freq_mhz=None,
        gpu_temp_c=50,
        cpu_temp_c=50,
    )
    values.update(fields)
    return Sample(**values)


class TestThermalHysteresis:
    def test_documented_reading_sequence(self, gpu_thermal):
        states = [gpu_thermal.update(t) for t in [75, 82, 78, 69]]
        assert states == [
            MitigationState.NORMAL,
            MitigationState.THROTTLED,
            MitigationState.THROTTLED,
            MitigationState.NORMAL,
        ]

    def test_enter_switches_governor_and_logs_zone_dump(self, gpu_thermal, root, sink):
        gpu_thermal.update(82)
        assert read_governor(root) == "powersave"
        log = read_log(sink.path)
        assert "WARNING - GPU temperature critical (82°C > 80°C)" in log
        assert "All thermal zones:" in log
        assert "  GPU-therm: 60°C" in log
        assert "ACTION - Set GPU governor to powersave mode" in log
        assert "Current GPU frequency: 1300MHz" in log

    def test_exit_restores_default_governor(self, gpu_thermal, root, sink):
        gpu_thermal.update(85)
        gpu_thermal.update(65)
        assert gpu_thermal.state is MitigationState.NORMAL
        assert read_governor(root) == "simple_ondemand"
        assert "ACTION - Restored GPU governor to normal mode" in read_log(sink.path)

    @pytest.mark.parametrize("temp", [70, 71, 75, 79, 80])
    def test_band_is_dead_space_when_throttled(self, gpu_thermal, temp):
        gpu_thermal.update(90)
        for _ in range(5):
            assert gpu_thermal.update(temp) is MitigationState.THROTTLED

    @pytest.mark.parametrize("temp", [70, 75, 80])
    def test_band_is_dead_space_when_normal(self, gpu_thermal, root, temp):
        for _ in range(5):
            assert gpu_thermal.update(temp) is MitigationState.NORMAL
        assert read_governor(root) == "simple_ondemand"

    def test_exit_requires_powersave_governor(self, gpu_thermal, root):
        gpu_thermal.update(90)
        write(root, GPU_GOVERNOR, "performance\n")
        assert gpu_thermal.update(60) is MitigationState.THROTTLED
        assert read_governor(root) == "performance"

    def test_hot_while_throttled_reasserts_powersave(self, gpu_thermal, root, sink):
        gpu_thermal.update(90)
        write(root, GPU_GOVERNOR, "performance\n")
        gpu_thermal.update(91)
        assert read_governor(root) == "powersave"
        # entry is only logged once
        assert read_log(sink.path).count("temperature critical") == 1

    def test_missing_temperature_is_a_no_op(self, gpu_thermal, root):
        gpu_thermal.update(90)
        assert gpu_thermal.update(None) is MitigationState.THROTTLED
        assert read_governor(root) == "powersave"

    def test_without_governor_file_state_still_cycles(self, tmp_path, sink):
        governor = FrequencyGovernor("CPU", tmp_path / "absent" / "scaling_governor", "ondemand")
        controller = ThermalController("CPU", sink, governor, throttle_temp_c=85)
        assert controller.update(86) is MitigationState.THROTTLED
        assert controller.update(74) is MitigationState.NORMAL
        assert "Set CPU governor" not in read_log(sink.path)

    def test_failed_governor_write_is_swallowed(self, gpu_thermal, root, sink):
        with mock.patch.object(Path, "write_text", side_effect=PermissionError("read-only")):
            assert gpu_thermal.update(90) is MitigationState.THROTTLED
        assert read_governor(root) == "simple_ondemand"
        assert "Could not set GPU governor to powersave mode" in read_log(sink.path)

    def test_unapplied_powersave_exits_on_temperature(self, gpu_thermal, root, sink):
        read_only = OSError(30, "Read-only file system")
        with mock.patch.object(Path, "write_text", side_effect=read_only):
            states = [gpu_thermal.update(t) for t in (85, 60, 85)]
        assert states == [
            MitigationState.THROTTLED,
            MitigationState.NORMAL,
            MitigationState.THROTTLED,
        ]
        assert read_governor(root) == "simple_ondemand"
        log = read_log(sink.path)
        assert log.count("temperature critical") == 2
        assert "Restored GPU governor" not in log

    def test_independent_instances_do_not_share_state(self, root, sink, gpu_governor):
        a = ThermalController("GPU", sink, gpu_governor, throttle_temp_c=80)
        b = ThermalController("GPU", sink, gpu_governor, throttle_temp_c=80)
        a.update(90)
        assert a.state is MitigationState.THROTTLED
        assert b.state is MitigationState.NORMAL


class TestMemoryController:
    @pytest.fixture
    def drops(self):
        return mock.Mock(return_value=True)

    @pytest.fixture
    def processes(self, root):
        write(root, "proc/201/smaps_rollup", "55550000-7fff [rollup]\nRss:             1228800 kB\nPss: 1 kB\n")
        write(root, "proc/101/smaps_rollup", "Rss:  921600 kB\n")
        return ProcessTable(provider=process_table, root=str(root))

    def controller(self, sink, processes, drops, **kwargs):
        return MemoryController(sink, processes, high_mb=6000, low_mb=3000, drop=drops, **kwargs)

    def test_high_usage_logs_warning_and_top_five(self, sink, processes, drops):
        fired = self.controller(sink, processes, drops).check(6500)
        assert fired
        log = read_log(sink.path)
        assert "WARNING - Memory usage high (6500MB > 6000MB), taking action" in log
        assert "ACTION - Dropped page cache" in log
        listing = log.split("Top memory processes:\n", 1)[1].splitlines()
        entries = [line for line in listing if line.startswith("  ")]
        assert 0 < len(entries) <= 5
        assert "deepstream-app" in entries[0]
        drops.assert_called_once()

    def test_at_or_below_threshold_does_nothing(self, sink, processes, drops):
        controller = self.controller(sink, processes, drops)
        assert not controller.check(6000)
        assert not controller.check(None)
        drops.assert_not_called()
        assert read_log(sink.path) == ""

    def test_level_trigger_repeats_every_cycle(self, sink, processes, drops):
        controller = self.controller(sink, processes, drops)
        for _ in range(3):
            assert controller.check(7000)
        assert drops.call_count == 3
        assert read_log(sink.path).count("Memory usage high") == 3

    def test_edge_trigger_fires_once_and_rearms_below_low(self, sink, processes, drops):
        controller = self.controller(sink, processes, drops, edge_trigger=True)
        assert controller.check(7000)
        assert not controller.check(7100)
        # between LOW and HIGH does not re-arm
        assert not controller.check(4000)
        assert not controller.check(6500)
        assert not controller.check(2500)
        assert controller.check(6500)
        assert drops.call_count == 2

    def test_heavy_runtime_group_is_flagged(self, sink, processes, drops):
        # python3 processes total 900 + 450 = 1350MB
        self.controller(sink, processes, drops).check(6500)
        log = read_log(sink.path)
        assert "WARNING - python using 1350MB of memory (potential leak)" in log
        assert "Heaviest python process:" in log
        assert "Process 101 memory details: RSS=921600kB" in log

    def test_heavy_runtime_below_limit_is_quiet(self, sink, processes, drops):
        self.controller(sink, processes, drops, runtime_limit_mb=2000).check(6500)
        assert "potential leak" not in read_log(sink.path)

    def test_denied_cache_drop_still_lists_processes(self, sink, processes):
        self.controller(sink, processes, mock.Mock(return_value=False)).check(6500)
        log = read_log(sink.path)
        assert "Page cache drop not permitted" in log
        assert "Top memory processes:" in log

    def test_real_drop_writes_proc_file(self, root, sink, processes):
        from edge_governor.actions import drop_caches

        controller = self.controller(sink, processes, lambda: drop_caches(str(root)))
        controller.check(6500)
        controller.check(6500)
        assert (root / "proc/sys/vm/drop_caches").read_text() == "3"


class TestUtilizationCheck:
    def test_warns_and_lists_without_acting(self, root, sink):
        processes = ProcessTable(provider=process_table, root=str(root))
        check = UtilizationCheck(
            "GPU", sink, 85,
            lambda: processes.matching("deepstream|yolo|tensorflow|python|inference", limit=3),
            "GPU-intensive processes:",
        )
        assert not check.check(85)
        assert check.check(92)
        log = read_log(sink.path)
        assert "WARNING - GPU usage high (92% > 85%)" in log
        listing = [line for line in log.splitlines() if line.startswith("  ")]
        assert len(listing) == 3
        assert read_governor(root) == "simple_ondemand"

    def test_unavailable_usage_is_skipped(self, sink):
        check = UtilizationCheck("CPU", sink, 85, lambda: [], "CPU-intensive processes:")
        assert not check.check(None)


class TestMitigationController:
    def build(self, root, sink, drops):
        config = GovernorConfig(sysfs_root=str(root), log_dir=str(root / "logs"))
        telemetry = TelemetrySource(str(root))
        processes = ProcessTable(provider=process_table, root=str(root))
        return MitigationController.from_config(config, sink, telemetry, processes, drop=drops)

    def test_quiet_sample_takes_no_action(self, root, sink):
        drops = mock.Mock(return_value=True)
        controller = self.build(root, sink, drops)
        controller.evaluate(make_sample())
        assert read_log(sink.path) == ""
        drops.assert_not_called()

    def test_hot_sample_throttles_both_dimensions(self, root, sink):
        controller = self.build(root, sink, mock.Mock(return_value=True))
        controller.evaluate(make_sample(gpu_temp_c=81, cpu_temp_c=86))
        assert controller.gpu_thermal.state is MitigationState.THROTTLED
        assert controller.cpu_thermal.state is MitigationState.THROTTLED
        assert read_governor(root, GPU_GOVERNOR) == "powersave"
        assert read_governor(root, CPU_GOVERNOR) == "powersave"

        controller.evaluate(make_sample(gpu_temp_c=60, cpu_temp_c=74))
        assert read_governor(root, GPU_GOVERNOR) == "simple_ondemand"
        assert read_governor(root, CPU_GOVERNOR) == "ondemand"

    def test_cpu_uses_its_own_throttle_temperature(self, root, sink):
        controller = self.build(root, sink, mock.Mock(return_value=True))
        controller.evaluate(make_sample(gpu_temp_c=50, cpu_temp_c=84))
        assert controller.cpu_thermal.state is MitigationState.NORMAL

    def test_all_sources_missing_is_silent(self, root, sink):
        controller = self.build(root, sink, mock.Mock(return_value=True))
        controller.evaluate(make_sample(
            memory_used_mb=None, memory_total_mb=None, cpu_busy_pct=None,
            gpu_load_pct=None, gpu_temp_c=None, cpu_temp_c=None,
        ))
        assert read_log(sink.path) == ""
