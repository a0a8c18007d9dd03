"""Measurement server endpoint sets.

A :class:`Server` maps logical endpoint keys such as
``"wss:///throughput/v1/download"`` to absolute URLs. URLs handed out by a
discovery service are used verbatim: nothing here patches scheme, host, port
or query. Local/dev endpoint sets are synthesized by :class:`ServerFactory`,
which fills the same keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlencode, urlsplit

from .errors import InvalidUrlError
from .measurements.models import ThroughputDirection

THROUGHPUT_DOWNLOAD_PATH = "throughput/v1/download"
THROUGHPUT_UPLOAD_PATH = "throughput/v1/upload"
LATENCY_AUTHORIZE_PATH = "latency/v1/authorize"
LATENCY_RESULT_PATH = "latency/v1/result"

THROUGHPUT_WS_PROTO = "net.measurementlab.throughput.v1"


@dataclass(frozen=True)
class ServerLocation:
    city: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class Server:
    machine: str
    urls: Dict[str, str] = field(default_factory=dict)
    location: Optional[ServerLocation] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Server":
        location = data.get("location")
        return cls(
            machine=data["machine"],
            urls=dict(data.get("urls") or {}),
            location=ServerLocation(location.get("city"), location.get("country")) if location else None,
        )

    def _select_absolute_url(self, kind: str, path: str, candidates: List[str]) -> str:
        raw = next((self.urls[key] for key in candidates if key in self.urls), None)
        if raw is None:
            raise InvalidUrlError(
                f"No {kind} URL found in Server.urls for '{path}'. Tried keys: {candidates}. "
                "Pass discovered servers as returned; build local ones with ServerFactory."
            )
        try:
            parts = urlsplit(raw)
            parts.port  # raises ValueError on a non-numeric port
        except ValueError as exc:
            raise InvalidUrlError(f"Malformed {kind} URL for '{path}': '{raw}'") from exc
        if not parts.scheme or not parts.hostname:
            raise InvalidUrlError(f"Malformed {kind} URL for '{path}': '{raw}' is not absolute")
        return raw

    def throughput_url(self, direction: ThroughputDirection) -> str:
        path = THROUGHPUT_UPLOAD_PATH if direction is ThroughputDirection.UPLOAD else THROUGHPUT_DOWNLOAD_PATH
        return self._select_absolute_url("throughput", path, [f"wss:///{path}", f"ws:///{path}"])

    def latency_authorize_url(self) -> str:
        path = LATENCY_AUTHORIZE_PATH
        return self._select_absolute_url("latency", path, [f"https:///{path}", f"http:///{path}"])

    def latency_result_url(self) -> str:
        path = LATENCY_RESULT_PATH
        return self._select_absolute_url("latency", path, [f"https:///{path}", f"http:///{path}"])


class ServerFactory:
    """Builds :class:`Server` instances for local or development servers."""

    @staticmethod
    def _base(host: str, port: int, use_tls: bool, secure: str, clear: str) -> str:
        scheme = secure if use_tls else clear
        if port <= 0:
            port = 443 if use_tls else 80
        return f"{scheme}://{host}:{port}"

    @staticmethod
    def _query(measurement_id: Optional[str]) -> str:
        return f"?{urlencode({'mid': measurement_id})}" if measurement_id else ""

    @classmethod
    def for_latency(
        cls,
        host: str,
        http_port: int = 8080,
        use_tls: bool = False,
        measurement_id: Optional[str] = None,
    ) -> Server:
        base = cls._base(host, http_port, use_tls, "https", "http")
        query = cls._query(measurement_id)
        urls = {
            f"http:///{LATENCY_AUTHORIZE_PATH}": f"{base}/{LATENCY_AUTHORIZE_PATH}{query}",
            f"http:///{LATENCY_RESULT_PATH}": f"{base}/{LATENCY_RESULT_PATH}{query}",
        }
        return Server(machine=host, urls=urls)

    @classmethod
    def for_throughput(
        cls,
        host: str,
        ws_port: int = 8080,
        use_tls: bool = False,
        measurement_id: Optional[str] = None,
    ) -> Server:
        base = cls._base(host, ws_port, use_tls, "wss", "ws")
        query = cls._query(measurement_id)
        urls = {
            f"ws:///{THROUGHPUT_DOWNLOAD_PATH}": f"{base}/{THROUGHPUT_DOWNLOAD_PATH}{query}",
            f"ws:///{THROUGHPUT_UPLOAD_PATH}": f"{base}/{THROUGHPUT_UPLOAD_PATH}{query}",
        }
        return Server(machine=host, urls=urls)
