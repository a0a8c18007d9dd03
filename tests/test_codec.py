import json

import pytest

from msak.measurements.codec import (
    PayloadError,
    decode_latency_authorization,
    decode_latency_message,
    decode_latency_result,
    decode_throughput_measurement,
    encode_latency_message,
    encode_throughput_measurement,
)
from msak.measurements.models import ByteCounters, LatencyMessage, ThroughputMeasurement


def test_latency_message_wire_format():
    message = LatencyMessage(type="c2s", id="abc", seq=3)
    assert encode_latency_message(message) == b'{"Type":"c2s","ID":"abc","Seq":3}'


def test_latency_message_with_last_rtt():
    message = LatencyMessage(type="c2s", id="abc", seq=4, last_rtt_us=1500)
    assert encode_latency_message(message) == b'{"Type":"c2s","ID":"abc","Seq":4,"LastRTT":1500}'


def test_latency_message_accepts_aliases():
    message = decode_latency_message(b'{"type":"s2c","mid":"m-1","seq":"7","rtt_us":12}')
    assert message == LatencyMessage(type="s2c", id="m-1", seq=7, last_rtt_us=12)


def test_latency_message_canonical_wins_over_alias():
    message = decode_latency_message('{"ID":"canonical","id":"alias","Seq":1}')
    assert message.id == "canonical"


def test_authorization_decodes():
    auth = decode_latency_authorization('{"Type":"c2s","ID":"xyz","Seq":0}')
    assert (auth.type, auth.id, auth.seq) == ("c2s", "xyz", 0)


def test_non_object_payload_rejected():
    with pytest.raises(PayloadError):
        decode_latency_message(b"[1, 2]")


def test_invalid_json_is_a_value_error():
    with pytest.raises(json.JSONDecodeError):
        decode_latency_message(b"{nope")


def test_result_round_trips_and_aliases():
    result = decode_latency_result(
        json.dumps(
            {
                "id": "r-1",
                "start_time": "2026-01-01T00:00:00Z",
                "round_trips": [{"rtt_us": 1000}, {"RTT": 0, "Lost": True}],
                "PacketsSent": 2,
                "packets_received": 1,
            }
        )
    )
    assert result.id == "r-1"
    assert result.start_time == "2026-01-01T00:00:00Z"
    assert [trip.rtt_us for trip in result.round_trips] == [1000, 0]
    assert [trip.lost for trip in result.round_trips] == [None, True]
    assert (result.packets_sent, result.packets_received) == (2, 1)


def test_result_requires_id():
    with pytest.raises(PayloadError):
        decode_latency_result('{"RoundTrips": []}')


def test_result_does_not_take_mid_as_id():
    with pytest.raises(PayloadError):
        decode_latency_result('{"mid": "m", "RoundTrips": []}')


def test_throughput_measurement_defaults_missing_counters():
    measurement = decode_throughput_measurement('{"Application": {}}')
    assert measurement.application == ByteCounters(0, 0)
    assert measurement.elapsed_time == 0
    assert measurement.network is None


def test_throughput_measurement_requires_application():
    with pytest.raises(PayloadError):
        decode_throughput_measurement('{"Network": {"BytesSent": 1}}')


def test_throughput_measurement_full_document():
    measurement = decode_throughput_measurement(
        '{"Network":{"BytesSent":10,"BytesReceived":20},'
        '"Application":{"BytesSent":5,"BytesReceived":6},"ElapsedTime":1234,"CC":"bbr","UUID":"u"}'
    )
    assert measurement.network == ByteCounters(10, 20)
    assert measurement.application == ByteCounters(5, 6)
    assert measurement.elapsed_time == 1234
    assert measurement.cc == "bbr"
    assert measurement.uuid == "u"


def test_throughput_measurement_encodes_compactly():
    text = encode_throughput_measurement(ThroughputMeasurement(ByteCounters(1, 2), 5))
    assert text == '{"Application":{"BytesSent":1,"BytesReceived":2},"ElapsedTime":5}'
