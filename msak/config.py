"""Configuration loading helpers for the measurement client."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

from .measurements.models import LatencyConfig, ThroughputConfig, ThroughputDirection
from .server import Server, ServerFactory


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_name: str = "msak.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5
    # per-logger overrides, e.g. {"websockets": "WARNING"}
    levels: Dict[str, str] = field(default_factory=lambda: {"websockets": "WARNING"})


@dataclass
class HttpConfig:
    user_agent: Optional[str] = "msak-client/1.0"
    connect_timeout: float = 10.0
    request_timeout: float = 15.0


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    http_port: int = 8080
    ws_port: int = 8080
    use_tls: bool = False


@dataclass
class LatencySettings:
    udp_port: int = 1053
    duration_ms: int = 3000
    retry_delay_ms: int = 1000
    retry_backoff_ms: int = 500


@dataclass
class ThroughputSettings:
    streams: int = 2
    duration_ms: int = 5000
    delay_ms: int = 0
    grace_ms: int = 5000


@dataclass
class ExportConfig:
    csv_name: str = "results.csv"


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    logging: LoggingConfig
    http: HttpConfig
    server: ServerConfig
    latency: LatencySettings
    throughput: ThroughputSettings
    export: ExportConfig

    def latency_server(self, measurement_id: str) -> Server:
        return ServerFactory.for_latency(
            self.server.host,
            http_port=self.server.http_port,
            use_tls=self.server.use_tls,
            measurement_id=measurement_id,
        )

    def throughput_server(self, measurement_id: str) -> Server:
        return ServerFactory.for_throughput(
            self.server.host,
            ws_port=self.server.ws_port,
            use_tls=self.server.use_tls,
            measurement_id=measurement_id,
        )

    def latency_config(self, measurement_id: str = "localtest") -> LatencyConfig:
        return LatencyConfig(
            server=self.latency_server(measurement_id),
            measurement_id=measurement_id,
            udp_port=self.latency.udp_port,
            duration_ms=self.latency.duration_ms,
            retry_delay_ms=self.latency.retry_delay_ms,
            retry_backoff_ms=self.latency.retry_backoff_ms,
            user_agent=self.http.user_agent,
        )

    def throughput_config(
        self, direction: ThroughputDirection, measurement_id: str = "localtest"
    ) -> ThroughputConfig:
        return ThroughputConfig(
            server=self.throughput_server(measurement_id),
            direction=direction,
            streams=self.throughput.streams,
            duration_ms=self.throughput.duration_ms,
            delay_ms=self.throughput.delay_ms,
            grace_ms=self.throughput.grace_ms,
            measurement_id=measurement_id,
            user_agent=self.http.user_agent,
        )


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        logging=LoggingConfig(**data.get("logging", {})),
        http=HttpConfig(**data.get("http", {})),
        server=ServerConfig(**data.get("server", {})),
        latency=LatencySettings(**data.get("latency", {})),
        throughput=ThroughputSettings(**data.get("throughput", {})),
        export=ExportConfig(**data.get("export", {})),
    )

    return config
