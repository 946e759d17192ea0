"""Prometheus metric definitions for the dish and the exporter itself."""
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

NAMESPACE = "starlink"
DISHY = "dishy"
EXPORTER = "exporter"

IDENTITY_LABELS = ("id", "hardware_version", "software_version", "manufactured_version", "country_code")

# Outage durations are bucketed from a quarter second up to one hour
OUTAGE_BUCKET_MIN = 0.25
OUTAGE_BUCKET_MAX = 3600.0
OUTAGE_BUCKET_COUNT = 15


def exponential_buckets_range(low: float, high: float, count: int) -> list[float]:
    """
    Return ``count`` exponentially spaced bucket bounds from ``low`` to ``high``.

    Raises:
        ValueError: If count < 1 or the bounds are not positive and increasing
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    if low <= 0 or high <= low:
        raise ValueError(f"need 0 < low < high, got low={low} high={high}")
    if count == 1:
        return [low]
    factor = (high / low) ** (1.0 / (count - 1))
    buckets = [low * factor ** i for i in range(count)]
    buckets[-1] = high
    return buckets


class DishyMetrics:
    """All exported series, registered on one private registry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        r = self.registry

        def dishy_gauge(name: str, doc: str, labels: tuple[str, ...] = ()) -> Gauge:
            return Gauge(name, doc, labels, namespace=NAMESPACE, subsystem=DISHY, registry=r)

        # Device info
        self.bootcount = dishy_gauge("bootcount", "Boot count of Dishy", IDENTITY_LABELS)

        # Status
        self.uptime = dishy_gauge("uptime_seconds", "Dishy uptime in seconds")
        self.gps_valid = dishy_gauge("gps_valid", "Boolean indicator for GPS valid")
        self.gps_sats = dishy_gauge("gps_sats", "Number of GPS satellites in view")
        self.alert_status = dishy_gauge("alert_status", "Boolean, Dishy alert is active", ("alert",))
        self.currently_obstructed = dishy_gauge("currently_obstructed", "Boolean, Dishy is obstructed")
        self.fraction_obstructed = dishy_gauge("fraction_obstructed", "Fraction of the sky obstructed")
        self.avg_obstruction_duration = dishy_gauge(
            "avg_obstruction_duration_sec", "Average prolonged obstruction duration in seconds")
        self.outage = dishy_gauge("outage", "Boolean, Dishy is currently in an outage")
        self.pop_ping_drop_rate = dishy_gauge("pop_ping_drop_rate", "PoP ping drop rate")
        self.pop_ping_latency = dishy_gauge("pop_ping_latency_ms", "PoP ping latency in milliseconds")
        self.uplink_throughput = dishy_gauge("uplink_throughput_bps", "Uplink throughput in bits per second")
        self.downlink_throughput = dishy_gauge("downlink_throughput_bps", "Downlink throughput in bits per second")
        self.azimuth = dishy_gauge("boresight_azimuth_deg", "Boresight azimuth in degrees")
        self.elevation = dishy_gauge("boresight_elevation_deg", "Boresight elevation in degrees")
        self.eth_speed = dishy_gauge("eth_speed_mbps", "Ethernet link speed in Mbps")

        # History
        self.outages = dishy_gauge("outages", "Outages in the current history window", ("cause",))
        self.outage_duration_sum = dishy_gauge(
            "outage_duration_sec_sum", "Total outage seconds in the current history window", ("cause",))
        self.outage_duration_avg = dishy_gauge(
            "outage_duration_sec_avg", "Average outage seconds in the current history window", ("cause",))
        self.outage_times = Histogram(
            "outage_times", "Durations of newly observed outages in seconds",
            namespace=NAMESPACE, subsystem=DISHY, registry=r,
            buckets=exponential_buckets_range(OUTAGE_BUCKET_MIN, OUTAGE_BUCKET_MAX, OUTAGE_BUCKET_COUNT),
        )

        # Exporter
        self.grpc_time = Histogram(
            "grpc_time", "Duration of gRPC requests to Dishy in seconds", ("request",),
            namespace=NAMESPACE, subsystem=EXPORTER, registry=r,
        )
        self.update_time = Histogram(
            "update_time", "Duration of a full update cycle in seconds",
            namespace=NAMESPACE, subsystem=EXPORTER, registry=r,
        )
        self.updates = Counter("updates", "Completed update cycles",
                               namespace=NAMESPACE, subsystem=EXPORTER, registry=r)
        self.requests = Counter("requests", "gRPC requests attempted",
                                namespace=NAMESPACE, subsystem=EXPORTER, registry=r)
        self.failures = Counter("failures", "gRPC requests failed",
                                namespace=NAMESPACE, subsystem=EXPORTER, registry=r)
        self.failing = Gauge("failing", "Boolean, the last gRPC request failed",
                             namespace=NAMESPACE, subsystem=EXPORTER, registry=r)
