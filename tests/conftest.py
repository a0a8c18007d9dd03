from __future__ import annotations

import logging
import textwrap

import pytest

from msak.config import load_config
from msak.db import init_db
from stubs import LatencyStub, ThroughputStub


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        textwrap.dedent(
            """
            paths:
              data_dir: data
              logs_dir: logs
            logging:
              level: DEBUG
            http:
              user_agent: msak-tests/1.0
              connect_timeout: 2
              request_timeout: 2
            server:
              host: 127.0.0.1
              http_port: 8080
              ws_port: 8081
            latency:
              udp_port: 2053
              duration_ms: 1000
              retry_delay_ms: 100
              retry_backoff_ms: 50
            throughput:
              streams: 3
              duration_ms: 2000
              delay_ms: 10
              grace_ms: 1000
            export:
              csv_name: out.csv
            """
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def app_config(config_file):
    return load_config(str(config_file))


@pytest.fixture
def session_factory(app_config):
    return init_db(app_config.paths.data_dir)


@pytest.fixture
def latency_stub():
    with LatencyStub() as stub:
        yield stub


@pytest.fixture
def throughput_stub():
    with ThroughputStub() as stub:
        yield stub


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
