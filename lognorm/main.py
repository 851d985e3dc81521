#!/usr/bin/env python3
"""lognorm entry point."""

import argparse
import logging
import signal
import sys
import threading

from lognorm.config import load_settings, load_yaml_config
from lognorm.errors import ConfigError
from lognorm.supervisor import PipelineSupervisor

logger = logging.getLogger("lognorm")


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Log normalization pipeline")
    parser.add_argument(
        "--config", default=None,
        help="Path to the pipeline YAML file (default: $CONFIG_PATH or config.yml)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_cli_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [LOGNORM] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        yaml_data = load_yaml_config(args.config)
        settings = load_settings(yaml_data)
        logging.getLogger().setLevel(settings.log_level.upper())
        supervisor = PipelineSupervisor(yaml_data, settings)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2

    logger.info(
        "Config: %d source(s), %d transform(s), %d sink(s), offsets=%s",
        len(supervisor.topology.sources), len(supervisor.topology.transforms),
        len(supervisor.topology.sinks), settings.offsets_file,
    )

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, draining...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    supervisor.run_forever(shutdown_event)
    logger.info("lognorm stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
