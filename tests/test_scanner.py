import threading
import time

import pytest

from chainscan.errors import ConfigError
from chainscan.models import PortState, ScanConfig, ScanTarget, ServiceInfo, ServiceLabel
from chainscan.prober import ProbeResult
from chainscan.scanner import ScanRun, scan

from conftest import nginx_reply

TARGET = ScanTarget(host="localhost", address="127.0.0.1")


class FakeProber:
    def __init__(self, states=None, delay=0.0):
        self.states = states or {}
        self.delay = delay
        self.started = []
        self._lock = threading.Lock()

    def __call__(self, target, port, timeout_s):
        with self._lock:
            self.started.append(port)
        if self.delay:
            time.sleep(self.delay)
        state = self.states.get(port, PortState.CLOSED)
        if isinstance(state, Exception):
            raise state
        reason = "ENETUNREACH: Network is unreachable" if state is PortState.ERROR else None
        return ProbeResult(port, state, 0.001, reason=reason)


class FakeClassifier:
    def __init__(self):
        self.calls = []

    def classify(self, handle, address, port):
        self.calls.append((address, port))
        return ServiceInfo(ServiceLabel.HTTP_WEB, version="nginx")


class CountingRun(ScanRun):
    """Tracks how many units are inside scan_port at once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def scan_port(self, port):
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            return super().scan_port(port)
        finally:
            with self._count_lock:
                self.active -= 1


def test_every_port_reported_once_and_sorted():
    config = ScanConfig(start_port=20, end_port=120, timeout_s=0.1, concurrency=7)
    prober = FakeProber({22: PortState.OPEN, 80: PortState.OPEN, 99: PortState.TIMED_OUT})
    run = ScanRun(TARGET, config, FakeClassifier(), prober=prober)

    report = scan(TARGET, config, run=run)

    ports = [o.port for o in report.outcomes]
    assert ports == list(range(20, 121))
    assert len(report.outcomes) == config.end_port - config.start_port + 1
    assert report.complete
    assert not report.cancelled
    assert report.open_count == 2
    assert report.timed_out_count == 1
    assert report.closed_count == 98


@pytest.mark.parametrize("limit", [1, 3, 16])
def test_in_flight_units_never_exceed_limit(limit):
    config = ScanConfig(start_port=1, end_port=60, timeout_s=0.1, concurrency=limit)
    run = CountingRun(TARGET, config, FakeClassifier(), prober=FakeProber(delay=0.005))

    report = scan(TARGET, config, run=run)

    assert len(report.outcomes) == 60
    assert 1 <= run.max_active <= limit


def test_states_map_to_outcomes():
    config = ScanConfig(start_port=1, end_port=4, timeout_s=0.1, concurrency=2)
    prober = FakeProber({
        1: PortState.OPEN,
        2: PortState.CLOSED,
        3: PortState.TIMED_OUT,
        4: PortState.ERROR,
    })
    classifier = FakeClassifier()
    report = scan(TARGET, config, run=ScanRun(TARGET, config, classifier, prober=prober))

    assert [o.state for o in report.outcomes] == [
        PortState.OPEN, PortState.CLOSED, PortState.TIMED_OUT, PortState.ERROR,
    ]
    assert report.get(1).service.label is ServiceLabel.HTTP_WEB
    assert report.get(4).reason.startswith("ENETUNREACH")
    assert report.errored_count == 2
    assert classifier.calls == [("127.0.0.1", 1)]


def test_classification_skipped_when_disabled():
    config = ScanConfig(start_port=1, end_port=2, timeout_s=0.1, concurrency=2, classify=False)
    classifier = FakeClassifier()
    report = scan(TARGET, config, run=ScanRun(TARGET, config, classifier, prober=FakeProber({1: PortState.OPEN})))

    assert report.get(1).is_open
    assert report.get(1).service is None
    assert classifier.calls == []


def test_unit_exception_becomes_error_outcome():
    config = ScanConfig(start_port=1, end_port=5, timeout_s=0.1, concurrency=2)
    prober = FakeProber({3: RuntimeError("boom")})
    report = scan(TARGET, config, run=ScanRun(TARGET, config, FakeClassifier(), prober=prober))

    assert len(report.outcomes) == 5
    assert report.get(3).state is PortState.ERROR
    assert "boom" in report.get(3).reason


def test_invalid_range_fails_before_any_connect():
    prober = FakeProber()
    with pytest.raises(ConfigError):
        ScanRun(TARGET, ScanConfig(start_port=100, end_port=10), prober=prober)
    assert prober.started == []


def test_run_is_single_use():
    config = ScanConfig(start_port=1, end_port=3, timeout_s=0.1, concurrency=1)
    run = ScanRun(TARGET, config, FakeClassifier(), prober=FakeProber())
    assert len(list(run)) == 3
    with pytest.raises(RuntimeError):
        iter(run)


def test_outcomes_stream_lazily():
    config = ScanConfig(start_port=1, end_port=1000, timeout_s=0.1, concurrency=2)
    prober = FakeProber(delay=0.001)
    run = ScanRun(TARGET, config, FakeClassifier(), prober=prober)

    it = iter(run)
    first = next(it)
    assert 1 <= first.port <= 1000
    run.cancel()
    rest = list(it)
    # only what was already in flight drains after cancel
    assert len(rest) <= config.concurrency


def test_cancel_stops_new_starts_and_drains_in_flight():
    config = ScanConfig(start_port=1, end_port=50, timeout_s=0.1, concurrency=4)
    prober = FakeProber(delay=0.01)
    run = ScanRun(TARGET, config, FakeClassifier(), prober=prober)

    def on_progress(completed, total, outcome):
        if completed == 5:
            run.cancel()

    report = scan(TARGET, config, on_progress=on_progress, run=run)

    assert report.cancelled
    assert not report.complete
    assert len(report.outcomes) < 50
    # every started unit still produced a terminal outcome
    assert sorted(prober.started) == [o.port for o in report.outcomes]
    assert len(prober.started) <= 5 + config.concurrency


def test_real_scan_against_local_http(tcp_server):
    port = tcp_server(nginx_reply)
    config = ScanConfig(start_port=port, end_port=port, timeout_s=1.0, concurrency=4)
    report = scan(TARGET, config)

    outcome = report.get(port)
    assert outcome.is_open
    assert outcome.service.label is ServiceLabel.HTTP_WEB
    assert outcome.service.version == "nginx"


def test_real_scan_of_unused_port_is_never_open(free_port):
    config = ScanConfig(start_port=free_port, end_port=free_port, timeout_s=0.5, concurrency=1)
    report = scan(TARGET, config)
    assert report.get(free_port).state in (PortState.CLOSED, PortState.TIMED_OUT)


def test_interrupt_while_recording_keeps_partial_report():
    config = ScanConfig(start_port=1, end_port=40, timeout_s=0.1, concurrency=3)
    prober = FakeProber(delay=0.005)
    run = ScanRun(TARGET, config, FakeClassifier(), prober=prober)

    def on_progress(completed, total, outcome):
        if completed == 3:
            raise KeyboardInterrupt

    report = scan(TARGET, config, on_progress=on_progress, run=run)

    assert run.interrupted
    assert report.cancelled
    assert len(report.outcomes) < 40
    assert sorted(prober.started) == [o.port for o in report.outcomes]
