import pytest

from msak.errors import InvalidUrlError
from msak.measurements.models import ThroughputDirection
from msak.server import Server, ServerFactory


def test_secure_key_is_preferred():
    server = Server(
        machine="mlab1",
        urls={
            "ws:///throughput/v1/download": "ws://plain.example/throughput/v1/download",
            "wss:///throughput/v1/download": "wss://secure.example/throughput/v1/download?access_token=t",
        },
    )
    assert server.throughput_url(ThroughputDirection.DOWNLOAD) == (
        "wss://secure.example/throughput/v1/download?access_token=t"
    )


def test_discovered_urls_are_used_verbatim():
    url = "https://lat.example:4443/latency/v1/authorize?mid=abc&access_token=xyz"
    server = Server(machine="m", urls={"https:///latency/v1/authorize": url})
    assert server.latency_authorize_url() == url


def test_missing_key_raises():
    server = Server(machine="m", urls={"ws:///throughput/v1/download": "ws://h/throughput/v1/download"})
    with pytest.raises(InvalidUrlError) as info:
        server.throughput_url(ThroughputDirection.UPLOAD)
    assert "throughput/v1/upload" in str(info.value)


@pytest.mark.parametrize("bad", ["/latency/v1/result", "http://host:notaport/latency/v1/result"])
def test_malformed_urls_raise(bad):
    server = Server(machine="m", urls={"http:///latency/v1/result": bad})
    with pytest.raises(InvalidUrlError):
        server.latency_result_url()


def test_factory_latency_urls():
    server = ServerFactory.for_latency("10.0.0.5", http_port=9090, measurement_id="run 1")
    assert server.machine == "10.0.0.5"
    assert server.latency_authorize_url() == "http://10.0.0.5:9090/latency/v1/authorize?mid=run+1"
    assert server.latency_result_url() == "http://10.0.0.5:9090/latency/v1/result?mid=run+1"


def test_factory_throughput_tls_default_port():
    server = ServerFactory.for_throughput("example.org", ws_port=0, use_tls=True)
    assert server.throughput_url(ThroughputDirection.UPLOAD) == "wss://example.org:443/throughput/v1/upload"


def test_from_dict():
    server = Server.from_dict(
        {
            "machine": "mlab2-lga0t",
            "location": {"city": "New York", "country": "US"},
            "urls": {"wss:///throughput/v1/upload": "wss://h/throughput/v1/upload"},
        }
    )
    assert server.location.city == "New York"
    assert server.throughput_url(ThroughputDirection.UPLOAD) == "wss://h/throughput/v1/upload"
