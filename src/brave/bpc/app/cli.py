import json
import logging
from logging.config import dictConfig
import os

from aiohttp import web

NOISY_LOGGERS = ("aiohttp.access", "asyncio", "sqlalchemy.engine")


def configure_logging(debug: bool = False) -> None:
    """
    Apply the dictConfig JSON file named by LOGGING_CONFIG_FILE, or fall back to basicConfig.

    Without a config file the root level is DEBUG in debug mode and INFO otherwise. Library loggers in
    NOISY_LOGGERS stay at WARNING unless debugging.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def invoke():
    from brave.bpc.app.config import Settings
    from brave.bpc.app.server import start_web_server

    settings = Settings()  # type: ignore
    configure_logging(settings.debug)

    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
