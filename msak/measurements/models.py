"""Shared dataclasses for measurements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from ..server import Server


class ThroughputDirection(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


@dataclass(frozen=True)
class LatencyMessage:
    type: Optional[str] = None  # "c2s" or "s2c"
    id: Optional[str] = None
    seq: Optional[int] = None
    last_rtt_us: Optional[int] = None


@dataclass(frozen=True)
class LatencyAuthorization:
    type: Optional[str] = None
    id: Optional[str] = None
    seq: Optional[int] = None


@dataclass(frozen=True)
class LatencyRoundTrip:
    rtt_us: Optional[int] = None
    lost: Optional[bool] = None


@dataclass(frozen=True)
class LatencyResult:
    id: str
    start_time: Optional[str] = None
    round_trips: Tuple[LatencyRoundTrip, ...] = ()
    packets_sent: Optional[int] = None
    packets_received: Optional[int] = None


@dataclass(frozen=True)
class LatencyUpdate:
    time: datetime
    message: LatencyMessage
    raw: bytes = b""


@dataclass(frozen=True)
class ByteCounters:
    bytes_sent: int = 0
    bytes_received: int = 0


@dataclass(frozen=True)
class ThroughputMeasurement:
    application: ByteCounters
    elapsed_time: int
    network: Optional[ByteCounters] = None
    cc: Optional[str] = None
    uuid: Optional[str] = None
    local_addr: Optional[str] = None
    remote_addr: Optional[str] = None


@dataclass(frozen=True)
class ThroughputUpdate:
    from_server: bool
    stream: int
    time: datetime
    measurement: ThroughputMeasurement


@dataclass(frozen=True)
class LatencyConfig:
    server: "Server"
    measurement_id: str = "localtest"
    udp_port: int = 1053
    duration_ms: int = 3000
    retry_delay_ms: int = 1000
    retry_backoff_ms: int = 500
    user_agent: Optional[str] = None
    grace_ms: int = 5000


@dataclass(frozen=True)
class ThroughputConfig:
    server: "Server"
    direction: ThroughputDirection
    streams: int = 2
    duration_ms: int = 5000
    delay_ms: int = 0
    grace_ms: int = 5000
    measurement_id: str = "localtest"
    user_agent: Optional[str] = None


def format_two_decimals(value: float) -> str:
    return f"{value:.2f}"


@dataclass
class LatencySummary:
    sent: int
    received: int
    mean_ms: Optional[float]
    stdev_ms: Optional[float]
    result: Optional[LatencyResult] = None

    def as_text(self) -> str:
        if self.mean_ms is None or self.stdev_ms is None:
            return f"OK {self.received}/{self.sent} (no samples)"
        return (
            f"OK {self.received}/{self.sent} "
            f"mean={format_two_decimals(self.mean_ms)}ms stdev={format_two_decimals(self.stdev_ms)}ms"
        )


@dataclass
class ThroughputSummary:
    direction: ThroughputDirection
    app_bytes_total: int
    mbits: float
    mbps: float
    client_updates: int
    server_updates: int
    client_bytes: int
    server_bytes: int
    soft_end: bool = False
    failed_streams: List[int] = field(default_factory=list)

    def as_text(self) -> str:
        return (
            f"Throughput {self.direction.value} OK | bytes={self.app_bytes_total} app "
            f"Mbits={format_two_decimals(self.mbits)} Mbps={format_two_decimals(self.mbps)} "
            f"updates client={self.client_updates} server={self.server_updates} "
            f"[client={self.client_updates}/{format_two_decimals(self.client_bytes / 1_000_000)}M "
            f"server={self.server_updates}/{format_two_decimals(self.server_bytes / 1_000_000)}M]"
        )


@dataclass
class MeasurementResult:
    measurement_type: str
    timestamp: datetime
    server: Optional[str]
    measurement_id: Optional[str]
    packets_sent: Optional[int] = None
    packets_received: Optional[int] = None
    rtt_mean_ms: Optional[float] = None
    rtt_stdev_ms: Optional[float] = None
    mbps: Optional[float] = None
    app_bytes: Optional[int] = None
    client_updates: Optional[int] = None
    server_updates: Optional[int] = None
    soft_end: Optional[bool] = None
    raw_json: Dict[str, Any] = field(default_factory=dict)
