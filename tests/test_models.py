import pytest

from chainscan.config import load_defaults
from chainscan.errors import ConfigError
from chainscan.models import (
    PortOutcome,
    PortState,
    ScanConfig,
    ScanReport,
    ScanTarget,
    ServiceInfo,
    ServiceLabel,
)
from chainscan.ports import parse_ports, port_range


@pytest.mark.parametrize("kwargs", [
    {"start_port": 100, "end_port": 10},
    {"start_port": 0, "end_port": 10},
    {"start_port": 1, "end_port": 65536},
    {"timeout_s": 0},
    {"timeout_s": -1.0},
    {"timeout_s": float("nan")},
    {"timeout_s": float("inf")},
    {"timeout_s": None},
    {"concurrency": 0},
    {"start_port": "1"},
])
def test_invalid_config(kwargs):
    with pytest.raises(ConfigError):
        ScanConfig(**kwargs).validate()


def test_valid_config_range():
    config = ScanConfig(start_port=8545, end_port=8549, timeout_s=0.5, concurrency=1).validate()
    assert list(config.ports) == [8545, 8546, 8547, 8548, 8549]
    assert config.total_ports == 5
    assert ScanConfig(start_port=65535, end_port=65535).validate().total_ports == 1


def test_service_info_headers_are_read_only_and_ordered():
    info = ServiceInfo(ServiceLabel.HTTP_WEB, "nginx", {"Status": "HTTP/1.1 200 OK", "Server": "nginx", "Via": "1.1 cdn"})
    assert list(info.headers) == ["Status", "Server", "Via"]
    with pytest.raises(TypeError):
        info.headers["Server"] = "apache"


def test_report_counts_and_export():
    target = ScanTarget("example.com", "93.184.216.34")
    outcomes = [
        PortOutcome.open_(80, 0.01, ServiceInfo(ServiceLabel.HTTP_WEB, "nginx", {"Server": "nginx"})),
        PortOutcome.closed(81, 0.01),
        PortOutcome.timed_out(82, 1.0),
        PortOutcome.error(83, 0.0, "EHOSTUNREACH: No route to host"),
    ]
    report = ScanReport(target, ScanConfig(start_port=80, end_port=84), outcomes, elapsed_s=1.5)

    assert (report.open_count, report.closed_count, report.timed_out_count, report.error_count) == (1, 1, 1, 1)
    assert report.errored_count == 2
    assert not report.complete
    assert report.get(84) is None
    assert [o.port for o in report.open_outcomes()] == [80]

    doc = report.to_dict()
    assert doc["summary"] == {"open": 1, "closed": 1, "timed_out": 1, "error": 1}
    assert doc["ports"][0] == {
        "port": 80,
        "status": "open",
        "elapsed_s": 0.01,
        "service": "HttpWeb",
        "version": "nginx",
        "headers": {"Server": "nginx"},
        "reason": None,
    }
    assert doc["ports"][3]["reason"].startswith("EHOSTUNREACH")


def test_outcome_flags():
    assert PortOutcome.open_(1, 0.0).is_open
    assert PortOutcome.timed_out(1, 0.0).is_errored
    assert PortOutcome.error(1, 0.0, "x").state is PortState.ERROR
    assert not PortOutcome.closed(1, 0.0).is_errored


@pytest.mark.parametrize("spec,expected", [
    ("80", [80]),
    ("8545-8549", [8545, 8546, 8547, 8548, 8549]),
    ("4444,1234, 4444", [1234, 4444]),
    ("5555,7000-7002", [5555, 7000, 7001, 7002]),
])
def test_parse_ports(spec, expected):
    assert parse_ports(spec) == expected


@pytest.mark.parametrize("spec", ["", "0", "70000", "10-1", "abc", "1-x"])
def test_parse_ports_rejects(spec):
    with pytest.raises(ConfigError):
        parse_ports(spec)


def test_port_range():
    assert port_range(1, 3) == range(1, 4)
    with pytest.raises(ConfigError):
        port_range(3, 1)


def test_defaults_from_environment():
    d = load_defaults({"CHAINSCAN_END_PORT": "9000", "CHAINSCAN_DNS": "system"})
    assert d["START_PORT"] == 1
    assert d["END_PORT"] == 9000
    assert d["TIMEOUT_MS"] == 1000
    assert d["CONCURRENCY"] == 100
    assert d["DNS"] == "system"
    assert d["FALLBACK_DNS"] == "cloudflare"


def test_malformed_environment_default():
    with pytest.raises(ConfigError):
        load_defaults({"CHAINSCAN_TIMEOUT_MS": "fast"})
