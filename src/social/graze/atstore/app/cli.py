import argparse
import json
import logging
import os
from logging.config import dictConfig
from typing import List, Optional

from aiohttp import web


def configure_logging(level: Optional[str] = None) -> None:
    """
    Apply the dictConfig JSON file named by LOGGING_CONFIG_FILE when set.
    Otherwise log to stderr at `level`, LOG_LEVEL, or DEBUG, in that order.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")
    if logging_config_file:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel((level or os.getenv("LOG_LEVEL", "DEBUG")).upper())


def invoke(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="atstore", description="atstore web server")
    parser.add_argument("--host", default=os.getenv("HTTP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("HTTP_PORT", "5100")))
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    from social.graze.atstore.app.server import start_web_server

    web.run_app(start_web_server(), host=args.host, port=args.port)


if __name__ == "__main__":
    invoke()
