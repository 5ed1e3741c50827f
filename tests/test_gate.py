"""Tests for the resource gate."""

import threading

from conftest import FakeMetrics

from incremental_backup.engine.gate import Admission, ResourceSnapshot, assess
from incremental_backup.utils.config import ResourceThresholds


def snapshot(**kwargs) -> ResourceSnapshot:
    values = dict(cpu_load_per_core=0.5, memory_usage=40.0, io_wait=1.0, disk_free=60.0,
                  connection_usage=10.0, healthy=True)
    values.update(kwargs)
    return ResourceSnapshot(**values)


class TestAssess:
    """Classification of signals."""

    def test_all_fine(self):
        result = assess(snapshot(), ResourceThresholds())
        assert result.admitted
        assert result.exit_code == 0
        assert len(result.passed) == 6

    def test_blocking_signals(self):
        result = assess(snapshot(cpu_load_per_core=2.5, disk_free=5.0, healthy=False),
                        ResourceThresholds())
        assert not result.admitted
        assert len(result.blocking) == 3
        assert result.exit_code == 1

    def test_advisory_signals(self):
        result = assess(snapshot(io_wait=60.0, connection_usage=90.0), ResourceThresholds())
        assert result.admitted
        assert len(result.advisory) == 2
        assert result.exit_code == 2

    def test_threshold_is_not_exceeded_when_equal(self):
        result = assess(snapshot(memory_usage=85.0), ResourceThresholds())
        assert result.admitted


class TestResourceGate:
    """Polling until admitted."""

    def test_admitted_immediately(self, make_gate, fake_sleep, tmp_path):
        gate = make_gate()
        assert gate.admit(tmp_path) is Admission.ADMITTED
        assert gate.polls == 1
        assert fake_sleep.calls == []

    def test_timeout(self, make_gate, fake_sleep, tmp_path):
        gate = make_gate(metrics=FakeMetrics(cpu=5.0))
        assert gate.admit(tmp_path) is Admission.TIMED_OUT
        # 180s budget with 60s interval: polls at 0, 60 and 120 seconds
        assert gate.polls == 3
        assert fake_sleep.calls == [60, 60]

    def test_admitted_after_load_drops(self, make_gate, tmp_path):
        metrics = FakeMetrics(memory=95.0)
        gate = make_gate(metrics=metrics)

        def sleep(seconds):
            metrics.memory = 50.0

        gate._sleep = sleep
        assert gate.admit(tmp_path) is Admission.ADMITTED
        assert gate.polls == 2

    def test_advisory_only_is_admitted(self, make_gate, connector, tmp_path):
        connector.utilization = 95.0
        gate = make_gate(metrics=FakeMetrics(io_wait=70.0))
        assert gate.admit(tmp_path) is Admission.ADMITTED
        assert gate.polls == 1

    def test_unhealthy_server_blocks(self, make_gate, connector, tmp_path):
        connector.healthy = False
        assert make_gate().admit(tmp_path) is Admission.TIMED_OUT

    def test_disabled(self, make_gate, tmp_path):
        gate = make_gate(metrics=FakeMetrics(cpu=50.0),
                         thresholds=ResourceThresholds(enabled=False))
        assert gate.admit(tmp_path) is Admission.ADMITTED
        assert gate.polls == 0

    def test_cancelled_while_waiting(self, make_gate, tmp_path):
        stop_event = threading.Event()
        gate = make_gate(metrics=FakeMetrics(cpu=5.0), stop_event=stop_event)
        gate._sleep = lambda seconds: stop_event.set()
        assert gate.admit(tmp_path) is Admission.CANCELLED
        assert gate.polls == 2
