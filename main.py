"""Command line entry point for the measurement client."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from typing import Optional, Sequence

from msak import bootstrap
from msak.errors import MsakError
from msak.measurements.models import ThroughputDirection


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Latency and throughput measurement client")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    parser.add_argument("--host", default=None, help="Override measurement server host")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    latency = commands.add_parser("latency", help="Run a UDP latency test")
    latency.add_argument("--mid", default="localtest", help="Measurement id")

    throughput = commands.add_parser("throughput", help="Run a WebSocket throughput test")
    throughput.add_argument("direction", choices=[d.value for d in ThroughputDirection])
    throughput.add_argument("--mid", default="localtest", help="Measurement id")
    throughput.add_argument("--streams", type=int, default=None, help="Override stream count")
    throughput.add_argument("--duration", type=int, default=None, help="Override duration in ms")

    history = commands.add_parser("history", help="Show stored measurements")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--type", dest="measurement_type", default=None)

    commands.add_parser("export", help="Write stored measurements to CSV")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    context = bootstrap(args.config, verbose=args.verbose)
    config = context.config
    if args.host:
        config.server.host = args.host

    try:
        if args.command == "latency":
            record = context.measurements.run_latency(args.mid)
            print(json.loads(record.raw_json)["summary"])
        elif args.command == "throughput":
            if args.streams is not None:
                config.throughput = replace(config.throughput, streams=args.streams)
            if args.duration is not None:
                config.throughput = replace(config.throughput, duration_ms=args.duration)
            record = context.measurements.run_throughput(ThroughputDirection(args.direction), args.mid)
            print(json.loads(record.raw_json)["summary"])
        elif args.command == "history":
            rows = context.measurements.get_measurements(limit=args.limit, measurement_type=args.measurement_type)
            for row in rows:
                print(json.dumps(context.measurements.to_dict(row)))
        elif args.command == "export":
            print(context.exporter.write_snapshot())
    except MsakError as exc:
        print(f"error[{exc.code.value}]: {exc.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error[canceled]: interrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
