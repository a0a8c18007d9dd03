"""Measurement orchestration and persistence layer."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from ..config import AppConfig
from ..db import Measurement, get_session
from ..net.http import HttpClient
from .models import (
    LatencySummary,
    LatencyUpdate,
    MeasurementResult,
    ThroughputDirection,
    ThroughputSummary,
    ThroughputUpdate,
)
from .runner import RunHandle, run_latency, run_throughput

LOGGER = logging.getLogger(__name__)

LATENCY_TYPE = "latency"


def throughput_type(direction: ThroughputDirection) -> str:
    return f"throughput-{direction.value}"


class MeasurementManager:
    def __init__(
        self,
        config: AppConfig,
        session_factory: sessionmaker,
        latency_runner: Callable[..., LatencySummary] = run_latency,
        throughput_runner: Callable[..., ThroughputSummary] = run_throughput,
    ):
        self.config = config
        self.Session = session_factory
        self._latency_runner = latency_runner
        self._throughput_runner = throughput_runner
        self.http = HttpClient(
            user_agent=config.http.user_agent,
            connect_timeout=config.http.connect_timeout,
            request_timeout=config.http.request_timeout,
        )

    def _persist(self, result: MeasurementResult) -> Measurement:
        with get_session(self.Session) as session:
            record = Measurement(
                timestamp=result.timestamp,
                measurement_type=result.measurement_type,
                server=result.server,
                measurement_id=result.measurement_id,
                packets_sent=result.packets_sent,
                packets_received=result.packets_received,
                rtt_mean_ms=result.rtt_mean_ms,
                rtt_stdev_ms=result.rtt_stdev_ms,
                mbps=result.mbps,
                app_bytes=result.app_bytes,
                client_updates=result.client_updates,
                server_updates=result.server_updates,
                soft_end=result.soft_end,
                raw_json=json.dumps(result.raw_json),
            )
            session.add(record)
            session.flush()
            LOGGER.info(
                "Stored %s measurement at %s (rtt %.2f ms / %.2f Mbps)",
                result.measurement_type,
                result.timestamp.isoformat(),
                result.rtt_mean_ms or 0,
                result.mbps or 0,
            )
            return record

    def run_latency(
        self,
        measurement_id: str = "localtest",
        handle: Optional[RunHandle] = None,
        on_update: Optional[Callable[[LatencyUpdate], None]] = None,
    ) -> Measurement:
        run_config = self.config.latency_config(measurement_id)
        summary = self._latency_runner(run_config, handle, on_update, http=self.http)
        raw = asdict(summary)
        raw["summary"] = summary.as_text()
        return self._persist(
            MeasurementResult(
                measurement_type=LATENCY_TYPE,
                timestamp=datetime.utcnow(),
                server=run_config.server.machine,
                measurement_id=measurement_id,
                packets_sent=summary.sent,
                packets_received=summary.received,
                rtt_mean_ms=summary.mean_ms,
                rtt_stdev_ms=summary.stdev_ms,
                raw_json=raw,
            )
        )

    def run_throughput(
        self,
        direction: ThroughputDirection,
        measurement_id: str = "localtest",
        handle: Optional[RunHandle] = None,
        on_update: Optional[Callable[[ThroughputUpdate], None]] = None,
    ) -> Measurement:
        run_config = self.config.throughput_config(direction, measurement_id)
        summary = self._throughput_runner(run_config, handle, on_update)
        raw = asdict(summary)
        raw["direction"] = summary.direction.value
        raw["summary"] = summary.as_text()
        return self._persist(
            MeasurementResult(
                measurement_type=throughput_type(direction),
                timestamp=datetime.utcnow(),
                server=run_config.server.machine,
                measurement_id=measurement_id,
                mbps=summary.mbps,
                app_bytes=summary.app_bytes_total,
                client_updates=summary.client_updates,
                server_updates=summary.server_updates,
                soft_end=summary.soft_end,
                raw_json=raw,
            )
        )

    def get_measurements(
        self,
        limit: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        measurement_type: Optional[str] = None,
    ) -> List[Measurement]:
        with get_session(self.Session) as session:
            query = session.query(Measurement).order_by(desc(Measurement.timestamp), desc(Measurement.id))
            if measurement_type:
                query = query.filter(Measurement.measurement_type == measurement_type)
            if start:
                query = query.filter(Measurement.timestamp >= start)
            if end:
                query = query.filter(Measurement.timestamp <= end)
            if limit:
                query = query.limit(limit)
            rows = query.all()
            return list(reversed(rows))

    def to_dict(self, measurement: Measurement) -> dict:
        return {
            "id": measurement.id,
            "timestamp": measurement.timestamp.isoformat(),
            "measurement_type": measurement.measurement_type,
            "server": measurement.server,
            "measurement_id": measurement.measurement_id,
            "packets_sent": measurement.packets_sent,
            "packets_received": measurement.packets_received,
            "rtt_mean_ms": measurement.rtt_mean_ms,
            "rtt_stdev_ms": measurement.rtt_stdev_ms,
            "mbps": measurement.mbps,
            "app_bytes": measurement.app_bytes,
            "client_updates": measurement.client_updates,
            "server_updates": measurement.server_updates,
            "soft_end": measurement.soft_end,
            "loss_percent": measurement.loss_percent,
        }
