"""Process bootstrap: load the config, start every service, wait."""

import argparse
import logging
import sys
import threading
from itertools import groupby
from pathlib import Path
from typing import List

from . import __version__
from .config import ConfigError, Settings, find_config, load_settings
from .generators import MimeTable
from .gopher import GopherServer
from .server import GeminiListener

logger = logging.getLogger(__name__)


def build_services(settings: Settings) -> List:
    """One GeminiListener per capsule port, one GopherServer per hole.

    Certificates are loaded here; a bad one aborts before anything listens.
    """
    by_kind = {GeminiListener.kind: [], GopherServer.kind: []}
    for config in settings.services:
        if config.kind not in by_kind:
            raise ConfigError(f"Unknown service kind: {config.kind}")
        by_kind[config.kind].append(config)

    mimes = MimeTable()
    services = []
    by_port = sorted(by_kind[GeminiListener.kind], key=lambda c: c.port)
    for port, capsules in groupby(by_port, key=lambda c: c.port):
        capsules = list(capsules)
        for i, capsule in enumerate(capsules):
            logger.info("Starting capsule %d %s", i, capsule.hostname)
        services.append(
            GeminiListener.from_configs(
                capsules, host=settings.bind, timeout=settings.timeout, mimes=mimes
            )
        )
    for i, hole in enumerate(by_kind[GopherServer.kind]):
        logger.info("Starting gopherhole %d %s", i, hole.hostname)
        services.append(GopherServer(hole, host=settings.bind, timeout=settings.timeout))
    return services


def run(services) -> None:
    for service in services:
        service.bind()

    threads = [
        threading.Thread(target=s.serve_forever, name=f"{s.kind}:{s.port}", daemon=True)
        for s in services
    ]
    for t in threads:
        t.start()
    try:
        for t in threads:
            t.join()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        for service in services:
            service.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secretshop",
        description="Gemini and Gopher server with virtual hosts",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to config.yaml (default: /etc/secretshop/ then ./)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"secretshop {__version__}",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        path = find_config(args.config)
        logger.info("Using config %s", path)
        services = build_services(load_settings(path))
    except ConfigError as e:
        logger.error("Fatal error in config: %s", e)
        return 1

    try:
        run(services)
    except OSError as e:
        logger.error("Cannot listen: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
