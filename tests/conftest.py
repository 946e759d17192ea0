"""Shared fixtures: a fake dish client and a fresh metrics registry per test."""
import pytest

from starlink_exporter.dishy import (
    ALERT_NAMES,
    DeviceIdentity,
    DeviceInfo,
    DishyRequestError,
    OutageRecord,
    StatusSnapshot,
)
from starlink_exporter.metrics import DishyMetrics
from starlink_exporter.poller import ExporterContext

NS = 1_000_000_000


def outage(start: int, duration_s: float, cause: str = "NO_SCHEDULE", did_switch: bool = False) -> OutageRecord:
    return OutageRecord(
        start_timestamp_ns=start,
        duration_ns=int(duration_s * NS),
        cause=cause,
        did_switch=did_switch,
    )


IDENTITY = DeviceIdentity(
    id="ut01000000-00000000-00abcdef",
    country_code="US",
    hardware_version="rev3_proto2",
    software_version="e0a0b2f0.uterm.release",
    manufactured_version="",
)


class FakeDishyClient:
    """Stands in for DishyClient; ``fail`` names the requests that should error."""

    def __init__(self):
        self.info = DeviceInfo(identity=IDENTITY, bootcount=7)
        self.status = StatusSnapshot(
            gps_valid=True,
            gps_sats=12,
            uptime_s=3600,
            fraction_obstructed=0.02,
            avg_prolonged_obstruction_duration_s=4.5,
            alerts={name: False for name in ALERT_NAMES},
            pop_ping_drop_rate=0.01,
            pop_ping_latency_ms=38.5,
            uplink_throughput_bps=12000.0,
            downlink_throughput_bps=250000.0,
            boresight_azimuth_deg=-12.5,
            boresight_elevation_deg=64.0,
            eth_speed_mbps=1000,
        )
        self.history: list[OutageRecord] = []
        self.fail: set[str] = set()
        self.calls: list[str] = []

    def _call(self, kind, value):
        self.calls.append(kind)
        if kind in self.fail:
            raise DishyRequestError(kind, TimeoutError("deadline exceeded"))
        return value

    def get_device_info(self):
        return self._call("info", self.info)

    def get_status(self):
        return self._call("status", self.status)

    def get_history(self):
        return self._call("history", list(self.history))

    def close(self):
        self.calls.append("close")


@pytest.fixture
def client() -> FakeDishyClient:
    return FakeDishyClient()


@pytest.fixture
def metrics() -> DishyMetrics:
    return DishyMetrics()


@pytest.fixture
def ctx(client, metrics) -> ExporterContext:
    return ExporterContext(client=client, metrics=metrics, identity_labels=IDENTITY.labels())


def sample(metrics: DishyMetrics, name: str, labels: dict[str, str] | None = None) -> float | None:
    return metrics.registry.get_sample_value(name, labels or {})


def series(metrics: DishyMetrics, metric_name: str) -> list:
    """All samples currently exported for one metric family."""
    for family in metrics.registry.collect():
        if family.name == metric_name:
            return list(family.samples)
    return []
