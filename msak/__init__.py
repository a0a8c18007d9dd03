"""Measurement client: UDP latency test and multi-stream WebSocket throughput test."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .measurements.manager import MeasurementManager


class ApplicationContext:
    """Holds shared singletons for the client."""

    def __init__(self, config: AppConfig, verbose: bool = False):
        self.config = config
        configure_logging(config, verbose=verbose)
        self.Session = init_db(config.paths.data_dir)
        self.measurements = MeasurementManager(config, self.Session)
        self.exporter = CSVExporter(config, self.Session)


def bootstrap(config_path: Optional[str] = None, verbose: bool = False) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config, verbose=verbose)
