"""Console logging for the CLI and API entry points."""

import logging
from typing import Optional

from rich.logging import RichHandler

from genqueue.config import LoggingConfig, settings


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install one root handler at the configured level.

    Uses a RichHandler unless ``logging.rich`` is false (e.g. when output is
    piped to a log collector).
    """
    config = config or settings.logging
    if config.rich:
        handler: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(config.level)
    # SQL echo stays off unless explicitly asked for at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.level == "DEBUG" else logging.WARNING
    )
