"""Decoding and encoding of the measurement protocol payloads.

Servers in the field spell the same field in several ways. Rather than making
the dataclasses lenient, every accepted spelling is listed in
:data:`FIELD_ALIASES`, keyed by the canonical wire name and versioned through
:data:`ALIAS_TABLE_VERSION`. Decoders look the canonical name up first and then
each alias in order.

The latency UDP message has its own narrow encoder, :func:`encode_latency_message`,
which writes the canonical wire format byte for byte instead of going through
:mod:`json`. Echoed packets are never re-encoded: the client sends back the exact
bytes it received.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from .models import (
    ByteCounters,
    LatencyAuthorization,
    LatencyMessage,
    LatencyResult,
    LatencyRoundTrip,
    ThroughputMeasurement,
)

ALIAS_TABLE_VERSION = 1

FIELD_ALIASES: Dict[str, tuple] = {
    # latency authorize / UDP message
    "Type": ("type",),
    "ID": ("Id", "id", "mid", "measurementId"),
    "Seq": ("seq", "Sequence", "sequence"),
    "LastRTT": ("last_rtt", "rtt_us", "RTT_US", "rtt"),
    # latency result
    "StartTime": ("start_time",),
    "RoundTrips": ("roundtrips", "round_trips"),
    "PacketsSent": ("packets_sent",),
    "PacketsReceived": ("packets_received",),
    "RTT": ("rtt_us", "RTT_US", "rtt"),
    "Lost": ("lost", "is_lost"),
}

# The result document uses "ID"/"id" only; "mid" there would be ambiguous.
RESULT_ID_ALIASES = ("id",)

LATENCY_CHARSET = "utf-8"


class PayloadError(ValueError):
    """A payload was valid JSON but not the expected shape."""


def _lookup(data: Mapping[str, Any], name: str, aliases: Optional[tuple] = None) -> Any:
    if name in data:
        return data[name]
    for alias in FIELD_ALIASES.get(name, ()) if aliases is None else aliases:
        if alias in data:
            return data[alias]
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _load_object(payload) -> Dict[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        payload = bytes(payload).decode(LATENCY_CHARSET)
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise PayloadError(f"expected a JSON object, got {type(data).__name__}")
    return data


# ----------------------------------------------------------------------
# Latency
# ----------------------------------------------------------------------


def encode_latency_message(message: LatencyMessage) -> bytes:
    """Canonical wire format of a latency message.

    ``{"Type":"c2s","ID":"<id>","Seq":<n>[,"LastRTT":<us>]}`` with no
    whitespace and fields in this order.
    """
    parts = [
        '"Type":' + json.dumps(message.type or ""),
        '"ID":' + json.dumps(message.id or ""),
        '"Seq":' + str(int(message.seq or 0)),
    ]
    if message.last_rtt_us is not None:
        parts.append('"LastRTT":' + str(int(message.last_rtt_us)))
    return ("{" + ",".join(parts) + "}").encode(LATENCY_CHARSET)


def decode_latency_message(payload) -> LatencyMessage:
    data = _load_object(payload)
    return LatencyMessage(
        type=_as_str(_lookup(data, "Type")),
        id=_as_str(_lookup(data, "ID")),
        seq=_as_int(_lookup(data, "Seq")),
        last_rtt_us=_as_int(_lookup(data, "LastRTT")),
    )


def decode_latency_authorization(payload) -> LatencyAuthorization:
    data = _load_object(payload)
    return LatencyAuthorization(
        type=_as_str(_lookup(data, "Type")),
        id=_as_str(_lookup(data, "ID")),
        seq=_as_int(_lookup(data, "Seq")),
    )


def decode_latency_result(payload) -> LatencyResult:
    data = _load_object(payload)
    result_id = _lookup(data, "ID", RESULT_ID_ALIASES)
    if result_id is None:
        raise PayloadError("latency result is missing ID")

    raw_trips = _lookup(data, "RoundTrips") or []
    if not isinstance(raw_trips, list):
        raise PayloadError("RoundTrips must be a list")
    trips = []
    for entry in raw_trips:
        if not isinstance(entry, dict):
            raise PayloadError("RoundTrips entries must be objects")
        lost = _lookup(entry, "Lost")
        trips.append(
            LatencyRoundTrip(
                rtt_us=_as_int(_lookup(entry, "RTT")),
                lost=bool(lost) if lost is not None else None,
            )
        )

    return LatencyResult(
        id=str(result_id),
        start_time=_as_str(_lookup(data, "StartTime")),
        round_trips=tuple(trips),
        packets_sent=_as_int(_lookup(data, "PacketsSent")),
        packets_received=_as_int(_lookup(data, "PacketsReceived")),
    )


# ----------------------------------------------------------------------
# Throughput
# ----------------------------------------------------------------------


def _byte_counters_from(data: Any) -> ByteCounters:
    if not isinstance(data, dict):
        raise PayloadError("byte counters must be an object")
    return ByteCounters(
        bytes_sent=_as_int(data.get("BytesSent")) or 0,
        bytes_received=_as_int(data.get("BytesReceived")) or 0,
    )


def _byte_counters_to(counters: ByteCounters) -> Dict[str, int]:
    return {"BytesSent": counters.bytes_sent, "BytesReceived": counters.bytes_received}


def decode_throughput_measurement(text) -> ThroughputMeasurement:
    data = _load_object(text)
    if "Application" not in data:
        raise PayloadError("measurement is missing Application")
    network = data.get("Network")
    return ThroughputMeasurement(
        application=_byte_counters_from(data["Application"]),
        elapsed_time=_as_int(data.get("ElapsedTime")) or 0,
        network=_byte_counters_from(network) if network is not None else None,
        cc=_as_str(data.get("CC")),
        uuid=_as_str(data.get("UUID")),
        local_addr=_as_str(data.get("LocalAddr")),
        remote_addr=_as_str(data.get("RemoteAddr")),
    )


def encode_throughput_measurement(measurement: ThroughputMeasurement) -> str:
    body: Dict[str, Any] = {}
    if measurement.network is not None:
        body["Network"] = _byte_counters_to(measurement.network)
    body["Application"] = _byte_counters_to(measurement.application)
    body["ElapsedTime"] = measurement.elapsed_time
    for key, value in (
        ("CC", measurement.cc),
        ("UUID", measurement.uuid),
        ("LocalAddr", measurement.local_addr),
        ("RemoteAddr", measurement.remote_addr),
    ):
        if value is not None:
            body[key] = value
    return json.dumps(body, separators=(",", ":"))
