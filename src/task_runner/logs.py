# logs.py
# Logging setup. Every module logs through logging.getLogger(__name__);
# entry points call configure_logging() once.

import logging

from rich.logging import RichHandler

from task_runner.display import console

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="[%X]", handlers=[handler], force=True)
    # SDK transport chatter stays quiet unless something goes wrong.
    for noisy in ("httpx", "openai", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
