"""
gRPC client for the Starlink user terminal ("Dishy").

The dish does not ship its protocol definitions; the service and message
classes are resolved at connect time through gRPC server reflection.
Responses are decoded into the plain dataclasses below so nothing outside
this module touches protobuf messages.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import grpc
from yagrc import reflector as yagrc_reflector

logger = logging.getLogger(__name__)

# ======================
# Constants
# ======================

DEFAULT_ADDRESS = "192.168.100.1:9200"
# Seconds to wait for the channel to become ready at startup
CONNECT_TIMEOUT = 5.0
# Per-request deadline (seconds)
REQUEST_TIMEOUT = 5.0

SERVICE_NAME = "SpaceX.API.Device.Device"
REQUEST_MESSAGE = "SpaceX.API.Device.Request"

REQUEST_INFO = "info"
REQUEST_STATUS = "status"
REQUEST_HISTORY = "history"

# Alert name -> accessor on the DishAlerts message
ALERT_FIELDS: tuple[tuple[str, Callable[[Any], bool]], ...] = (
    ("motors_stuck", lambda a: a.motors_stuck),
    ("thermal_throttle", lambda a: a.thermal_throttle),
    ("thermal_shutdown", lambda a: a.thermal_shutdown),
    ("mast_not_near_vertical", lambda a: a.mast_not_near_vertical),
    ("unexpected_location", lambda a: a.unexpected_location),
    ("slow_ethernet_speeds", lambda a: a.slow_ethernet_speeds),
    ("roaming", lambda a: a.roaming),
)
ALERT_NAMES = tuple(name for name, _ in ALERT_FIELDS)

NS_PER_SECOND = 1_000_000_000

# ======================
# Errors
# ======================

class DishyError(Exception):
    """Base class for device client errors."""


class DishyConnectionError(DishyError):
    """The dish could not be reached (or reflected) at startup."""


class DishyRequestError(DishyError):
    """A single request to the dish failed or timed out."""

    def __init__(self, request: str, cause: Exception):
        super().__init__(f"{request} request failed: {cause}")
        self.request = request
        self.cause = cause

# ======================
# Decoded types
# ======================

@dataclass(frozen=True)
class DeviceIdentity:
    id: str
    country_code: str
    hardware_version: str
    software_version: str
    manufactured_version: str

    def labels(self) -> dict[str, str]:
        """Label set attached to identity-scoped metrics."""
        return {
            "id": self.id,
            "hardware_version": self.hardware_version,
            "software_version": self.software_version,
            "manufactured_version": self.manufactured_version,
            "country_code": self.country_code,
        }


@dataclass(frozen=True)
class DeviceInfo:
    identity: DeviceIdentity
    bootcount: int


@dataclass(frozen=True)
class OutageRecord:
    """One entry of the dish outage history."""
    start_timestamp_ns: int
    duration_ns: int
    cause: str
    did_switch: bool = False

    @property
    def duration_seconds(self) -> float:
        return self.duration_ns / NS_PER_SECOND


@dataclass
class StatusSnapshot:
    gps_valid: bool = False
    gps_sats: int = 0
    uptime_s: int = 0
    currently_obstructed: bool = False
    fraction_obstructed: float = 0.0
    avg_prolonged_obstruction_duration_s: float = 0.0
    alerts: dict[str, bool] = field(default_factory=dict)
    pop_ping_drop_rate: float = 0.0
    pop_ping_latency_ms: float = 0.0
    uplink_throughput_bps: float = 0.0
    downlink_throughput_bps: float = 0.0
    boresight_azimuth_deg: float = 0.0
    boresight_elevation_deg: float = 0.0
    eth_speed_mbps: int = 0
    outage: OutageRecord | None = None

# ======================
# Decoding helpers
# ======================

def outage_cause_name(outage: Any) -> str:
    """Map the numeric DishOutage.Cause to its enum name ("UNKNOWN" if unmapped)."""
    try:
        enum_type = outage.DESCRIPTOR.fields_by_name["cause"].enum_type
        value = enum_type.values_by_number.get(outage.cause)
    except (AttributeError, KeyError):
        return str(outage.cause)
    return value.name if value is not None else "UNKNOWN"


def decode_outage(outage: Any) -> OutageRecord:
    return OutageRecord(
        start_timestamp_ns=int(outage.start_timestamp_ns),
        duration_ns=int(outage.duration_ns),
        cause=outage_cause_name(outage),
        did_switch=bool(outage.did_switch),
    )


def decode_device_info(info: Any) -> DeviceInfo:
    identity = DeviceIdentity(
        id=info.id,
        country_code=info.country_code,
        hardware_version=info.hardware_version,
        software_version=info.software_version,
        manufactured_version=info.manufactured_version,
    )
    return DeviceInfo(identity=identity, bootcount=int(info.bootcount))


def decode_status(status: Any) -> StatusSnapshot:
    """Copy the fields we export out of a DishGetStatusResponse."""
    obstruction = status.obstruction_stats
    outage = decode_outage(status.outage) if status.HasField("outage") else None
    return StatusSnapshot(
        gps_valid=bool(status.gps_stats.gps_valid),
        gps_sats=int(status.gps_stats.gps_sats),
        uptime_s=int(status.device_state.uptime_s),
        currently_obstructed=bool(obstruction.currently_obstructed),
        fraction_obstructed=float(obstruction.fraction_obstructed),
        avg_prolonged_obstruction_duration_s=float(obstruction.avg_prolonged_obstruction_duration_s),
        alerts={name: bool(getter(status.alerts)) for name, getter in ALERT_FIELDS},
        pop_ping_drop_rate=float(status.pop_ping_drop_rate),
        pop_ping_latency_ms=float(status.pop_ping_latency_ms),
        uplink_throughput_bps=float(status.uplink_throughput_bps),
        downlink_throughput_bps=float(status.downlink_throughput_bps),
        boresight_azimuth_deg=float(status.boresight_azimuth_deg),
        boresight_elevation_deg=float(status.boresight_elevation_deg),
        eth_speed_mbps=int(status.eth_speed_mbps),
        outage=outage,
    )

# ======================
# Client
# ======================

class DishyClient:
    """
    One channel to the dish, one unary ``Handle`` call per request.

    Calls are independent: there is no pipelining and no retry.
    """

    def __init__(self, channel: grpc.Channel, stub: Any, request_class: Any,
                 request_timeout: float = REQUEST_TIMEOUT):
        self.channel = channel
        self.stub = stub
        self.request_class = request_class
        self.request_timeout = request_timeout

    @classmethod
    def connect(cls, address: str = DEFAULT_ADDRESS, timeout: float = CONNECT_TIMEOUT,
                request_timeout: float = REQUEST_TIMEOUT) -> "DishyClient":
        """
        Open a channel to the dish and resolve the device service.

        Args:
            address: host:port of the dish gRPC endpoint
            timeout: Seconds to wait for the channel to become ready
            request_timeout: Deadline applied to every later request

        Raises:
            DishyConnectionError: If the dish is unreachable or reflection fails
        """
        channel = grpc.insecure_channel(address)
        try:
            grpc.channel_ready_future(channel).result(timeout=timeout)
        except grpc.FutureTimeoutError as e:
            channel.close()
            raise DishyConnectionError(f"Timeout connecting to {address} after {timeout}s") from e

        try:
            reflector = yagrc_reflector.GrpcReflectionClient()
            reflector.load_protocols(channel, symbols=[SERVICE_NAME])
            stub_class = reflector.service_stub_class(SERVICE_NAME)
            request_class = reflector.message_class(REQUEST_MESSAGE)
        except (grpc.RpcError, yagrc_reflector.ServiceError, KeyError) as e:
            channel.close()
            raise DishyConnectionError(f"Reflection against {address} failed: {e}") from e

        logger.debug(f"Connected to {address}, resolved {SERVICE_NAME}")
        return cls(channel, stub_class(channel), request_class, request_timeout)

    def _handle(self, kind: str, **request: Any) -> Any:
        try:
            return self.stub.Handle(self.request_class(**request), timeout=self.request_timeout)
        except grpc.RpcError as e:
            raise DishyRequestError(kind, e) from e

    def get_device_info(self) -> DeviceInfo:
        response = self._handle(REQUEST_INFO, get_device_info={})
        return decode_device_info(response.get_device_info.device_info)

    def get_status(self) -> StatusSnapshot:
        response = self._handle(REQUEST_STATUS, get_status={})
        return decode_status(response.dish_get_status)

    def get_history(self) -> list[OutageRecord]:
        """Outage window, oldest first, as returned by the dish."""
        response = self._handle(REQUEST_HISTORY, get_history={})
        return [decode_outage(o) for o in response.dish_get_history.outages]

    def close(self) -> None:
        self.channel.close()
