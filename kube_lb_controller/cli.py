"""Argument parsing, configuration loading, and controller bootstrap."""

from __future__ import annotations

import argparse
import logging
import sys

from .config import load_config
from .controller import Controller
from .exceptions import ConfigError, LBControllerError
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kube-lb-controller",
        description="Kubernetes load-balancer reconciliation controller",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile the current cluster state once and exit",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    try:
        controller = Controller.from_config(config)
        if args.once:
            logger.info("Running a single reconciliation pass (--once)")
            return controller.run_once()
        return controller.run()
    except LBControllerError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
