"""Run the str-aux API server.

Usage::

    python -m str_aux.main --config config/str_aux.yaml --port 8000
"""
from __future__ import annotations

import argparse
import logging

import uvicorn

from .app import create_app
from .config import load_settings

logger: logging.Logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="str-aux sampling and statistics API")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = load_settings(args.config)
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Starting str-aux on %s:%d", host, port)
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    main()
