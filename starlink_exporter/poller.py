"""
One update cycle against the dish: device info, status, then history.

Each request is accounted for independently; a failed request leaves the
metrics it feeds at their previous values and the cycle moves on.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from starlink_exporter.dishy import (
    NS_PER_SECOND,
    REQUEST_HISTORY,
    REQUEST_INFO,
    REQUEST_STATUS,
    DishyRequestError,
    OutageRecord,
    StatusSnapshot,
)
from starlink_exporter.metrics import DishyMetrics

logger = logging.getLogger(__name__)

# ======================
# Shared state
# ======================

@dataclass
class ExporterContext:
    """
    Process-wide state handed to the poller.

    ``client`` is anything exposing get_device_info/get_status/get_history.
    ``outage_watermark`` is the start timestamp (ns) of the newest outage seen
    so far; it only moves forward and resets to 0 on restart.
    """
    client: Any
    metrics: DishyMetrics
    identity_labels: dict[str, str] = field(default_factory=dict)
    outage_watermark: int = 0


@dataclass
class OutageAggregate:
    count: int = 0
    duration_seconds: float = 0.0

    @property
    def average_seconds(self) -> float:
        return self.duration_seconds / self.count if self.count else 0.0

# ======================
# Outage history
# ======================

def find_new_outages(outages: list[OutageRecord], watermark: int) -> tuple[list[OutageRecord], int]:
    """
    Pick the outages that started after ``watermark``.

    The window is expected oldest first. It is scanned newest to oldest and
    the scan stops at the first record that is not newer than the watermark,
    so an unordered window can be over- or under-counted.

    Args:
        outages: Current history window
        watermark: Start timestamp (ns) of the newest outage already counted

    Returns:
        Tuple of (new outages newest first, next watermark). The next
        watermark is the start of the newest record in the window, and never
        less than ``watermark``.
    """
    new: list[OutageRecord] = []
    for outage in reversed(outages):
        if outage.start_timestamp_ns <= watermark:
            break
        new.append(outage)

    if outages:
        watermark = max(watermark, outages[-1].start_timestamp_ns)
    return new, watermark


def aggregate_outages(outages: Iterable[OutageRecord]) -> dict[str, OutageAggregate]:
    """Group the whole window by cause. Recomputed from scratch every cycle."""
    by_cause: dict[str, OutageAggregate] = {}
    for outage in outages:
        agg = by_cause.setdefault(outage.cause, OutageAggregate())
        agg.count += 1
        agg.duration_seconds += outage.duration_seconds
    return by_cause

# ======================
# Request accounting
# ======================

def _request(ctx: ExporterContext, kind: str, call: Callable[[], Any]) -> Any:
    """
    Run one device call, recording attempt, latency and failure state.

    Returns:
        The decoded response, or None if the call failed
    """
    m = ctx.metrics
    m.requests.inc()
    start = time.monotonic()
    try:
        result = call()
    except DishyRequestError as e:
        m.grpc_time.labels(request=kind).observe(time.monotonic() - start)
        m.failing.set(1)
        m.failures.inc()
        logger.warning(f"Dishy request failed: request={kind} error={e.cause}")
        return None

    m.grpc_time.labels(request=kind).observe(time.monotonic() - start)
    m.failing.set(0)
    return result

# ======================
# Updaters
# ======================

def update_info(ctx: ExporterContext) -> None:
    info = _request(ctx, REQUEST_INFO, ctx.client.get_device_info)
    if info is None:
        return
    # Labels are fixed at startup even if the device reports new versions
    ctx.metrics.bootcount.labels(**ctx.identity_labels).set(info.bootcount)


def apply_status(metrics: DishyMetrics, status: StatusSnapshot) -> None:
    """Copy one status snapshot into the status gauges."""
    metrics.uptime.set(status.uptime_s)
    metrics.gps_valid.set(1 if status.gps_valid else 0)
    metrics.gps_sats.set(status.gps_sats)
    for alert, active in status.alerts.items():
        metrics.alert_status.labels(alert=alert).set(1 if active else 0)
    metrics.currently_obstructed.set(1 if status.currently_obstructed else 0)
    metrics.fraction_obstructed.set(status.fraction_obstructed)
    metrics.avg_obstruction_duration.set(status.avg_prolonged_obstruction_duration_s)
    metrics.outage.set(1 if status.outage is not None else 0)
    metrics.pop_ping_drop_rate.set(status.pop_ping_drop_rate)
    metrics.pop_ping_latency.set(status.pop_ping_latency_ms)
    metrics.uplink_throughput.set(status.uplink_throughput_bps)
    metrics.downlink_throughput.set(status.downlink_throughput_bps)
    metrics.azimuth.set(status.boresight_azimuth_deg)
    metrics.elevation.set(status.boresight_elevation_deg)
    metrics.eth_speed.set(status.eth_speed_mbps)


def update_status(ctx: ExporterContext) -> None:
    status = _request(ctx, REQUEST_STATUS, ctx.client.get_status)
    if status is None:
        return
    apply_status(ctx.metrics, status)
    if status.outage is not None:
        logger.debug(f"Dishy currently in outage: cause={status.outage.cause}")


def update_history(ctx: ExporterContext) -> None:
    outages = _request(ctx, REQUEST_HISTORY, ctx.client.get_history)
    if outages is None:
        return
    m = ctx.metrics

    new, ctx.outage_watermark = find_new_outages(outages, ctx.outage_watermark)
    for outage in new:
        m.outage_times.observe(outage.duration_seconds)
        started = datetime.fromtimestamp(outage.start_timestamp_ns / NS_PER_SECOND, tz=timezone.utc)
        logger.debug(
            f"Outage @ {started:%Y-%m-%d %H:%M:%S %Z} [{outage.duration_seconds:.1f}s] "
            f"switched={outage.did_switch} cause={outage.cause}"
        )
    if new:
        logger.info(f"Counted {len(new)} new outage(s), watermark={ctx.outage_watermark}")

    for cause, agg in aggregate_outages(outages).items():
        m.outages.labels(cause=cause).set(agg.count)
        m.outage_duration_sum.labels(cause=cause).set(agg.duration_seconds)
        m.outage_duration_avg.labels(cause=cause).set(agg.average_seconds)


def run_cycle(ctx: ExporterContext) -> None:
    """Info, status and history in sequence; one failure never stops the others."""
    start = time.monotonic()
    update_info(ctx)
    update_status(ctx)
    update_history(ctx)
    duration = time.monotonic() - start
    ctx.metrics.update_time.observe(duration)
    ctx.metrics.updates.inc()
    logger.debug(f"Completed update cycle in {duration:.3f}s")
