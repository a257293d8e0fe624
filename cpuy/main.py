from __future__ import annotations

import argparse
import json
import logging
import time

from cpuy.config import AppConfig, load_config
from cpuy.engine import TelemetryEngine
from cpuy.logging_utils import configure_logging, resolve_log_level
from cpuy.schema import validate_snapshot


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CpuY host telemetry collector")
    parser.add_argument(
        "--config",
        help="Path to CFG configuration file (defaults are used when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Print a single snapshot once background collection settles, then exit",
    )
    parser.add_argument(
        "--settle",
        type=float,
        default=5.0,
        help="Seconds to wait for background inventory queries before printing",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=2.0,
        help="Seconds between printed snapshots",
    )
    parser.add_argument(
        "--dump-json",
        help="Write the JSON snapshot to a file (overwrites on each loop)",
    )
    parser.add_argument(
        "--storage",
        action="store_true",
        help="Force a storage reload before the first snapshot",
    )
    return parser


def _emit(engine: TelemetryEngine, args: argparse.Namespace, pretty: bool) -> None:
    logger = logging.getLogger("cpuy")
    payload = engine.store.snapshot().to_dict()
    schema_errors = validate_snapshot(payload)
    if schema_errors:
        logger.warning("Schema validation failed with %s errors.", len(schema_errors))
        logger.debug("Schema errors: %s", schema_errors)
    payload_json = json.dumps(payload, indent=2) if pretty else json.dumps(payload)
    if args.dump_json:
        with open(args.dump_json, "w", encoding="utf-8") as handle:
            handle.write(payload_json)
    print(payload_json, flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("cpuy")
    config = load_config(args.config) if args.config else AppConfig.default()
    pretty = args.once or level <= logging.DEBUG

    with TelemetryEngine(config) as engine:
        if args.storage:
            engine.fetch_storage_if_needed(force=True)
        if not engine.wait_for_background(timeout=max(0.0, args.settle)):
            logger.info("Background collection still running after %ss.", args.settle)

        if args.once:
            _emit(engine, args, pretty)
            return

        interval = max(0.1, args.interval)
        logger.info("CpuY started. Printing every %s seconds.", interval)
        try:
            while True:
                _emit(engine, args, pretty)
                time.sleep(interval)
        except KeyboardInterrupt:
            logger.info("CpuY stopped.")


if __name__ == "__main__":
    main()
