"""CSV export of stored measurement runs."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .config import AppConfig
from .db import Measurement, get_session

COLUMNS = (
    "measurement_id",
    "packets_sent",
    "packets_received",
    "rtt_mean_ms",
    "rtt_stdev_ms",
    "mbps",
    "app_bytes",
    "client_updates",
    "server_updates",
    "soft_end",
)


class CSVExporter:
    def __init__(self, config: AppConfig, session_factory):
        self.config = config
        self.Session = session_factory

    def build_csv(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        measurement_type: Optional[str] = None,
    ) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["timestamp", "type", "server", *COLUMNS, "loss_percent"])
        writer.writerows(self._rows(start, end, measurement_type))
        buffer.seek(0)
        return buffer

    def _rows(
        self, start: Optional[datetime], end: Optional[datetime], measurement_type: Optional[str]
    ) -> Iterator[List]:
        with get_session(self.Session) as session:
            query = session.query(Measurement).order_by(Measurement.timestamp, Measurement.id)
            if measurement_type:
                query = query.filter(Measurement.measurement_type == measurement_type)
            if start:
                query = query.filter(Measurement.timestamp >= start)
            if end:
                query = query.filter(Measurement.timestamp <= end)
            for measurement in query.all():
                yield [
                    measurement.timestamp.isoformat(),
                    measurement.measurement_type,
                    *(_cell(getattr(measurement, name)) for name in ("server", *COLUMNS)),
                    _cell(measurement.loss_percent),
                ]

    def write_snapshot(self, target: Optional[Path] = None) -> Path:
        target = target or self.config.paths.data_dir / self.config.export.csv_name
        target.write_text(self.build_csv().getvalue(), encoding="utf-8")
        return target


def _cell(value):
    if value is None:
        return ""
    if isinstance(value, float):
        return round(value, 3)
    return value
