import sys

from loguru import logger

from .config import settings


def setup_logging(level: str | None = None, json: bool | None = None):
    """
    Configure the loguru sink used by the whole package.

    Keyword arguments passed to logger calls (``logger.info("msg", vendor=...)``)
    land in ``record["extra"]``; the JSON sink serializes them, the text sink
    appends them after the message.
    """
    level = level or settings.log_level
    json = settings.log_json if json is None else json

    logger.remove()
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
                "<cyan>{name}</cyan> - <level>{message}</level> {extra}"
            ),
        )
    return logger
