"""Loguru configuration for the manager's front ends.

Modules just ``from loguru import logger``; front ends call setup_logging()
once at startup. A normal run only needs the console (and often not even
that, while a progress display owns the terminal). --debug additionally
writes a rotating log file under the OS logs directory, which sits outside
the install directory so an uninstall never deletes the log it is writing.
"""

import sys
from pathlib import Path

from loguru import logger

from .paths import get_logs_dir

# Downloads run on a worker pool, so the thread name is part of every line
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <8}</level> "
    "<magenta>{thread.name}</magenta> "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {name}:{function}:{line} | {message}"

LOG_FILE_NAME = "miner-manager.log"


def setup_logging(
    log_level: str | None = None,
    console: bool = True,
    file: bool = False,
    log_dir: Path | None = None,
    home_dir: Path | None = None,
    operating_system: str = "linux",
    serialize_file: bool = False,
    diagnose_console: bool = False,
) -> Path | None:
    """Replace loguru's default handler with the manager's sinks.

    Args:
        log_level: Minimum level for every sink (default INFO)
        console: Log to stderr
        file: Also log to ``miner-manager.log`` (the CLI's --debug)
        log_dir: Override the log directory
        home_dir: Home used to resolve the default log directory
        operating_system: OS identifier used to resolve the default log directory
        serialize_file: Write JSON lines instead of text
        diagnose_console: Include variable values in console tracebacks

    Returns:
        The log file path when file logging is on, otherwise None
    """
    level = log_level or "INFO"
    logger.remove()

    if console:
        logger.add(
            sys.stderr,
            level=level,
            format=CONSOLE_FORMAT,
            colorize=True,
            backtrace=True,
            diagnose=diagnose_console,
            enqueue=True,
        )

    if not file:
        return None

    directory = Path(log_dir) if log_dir is not None else get_logs_dir(home_dir or Path.home(), operating_system)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    logger.add(
        log_path,
        level=level,
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="7 days",
        compression="gz",
        serialize=serialize_file,
        enqueue=True,
        backtrace=True,
        # tracebacks on disk never include local variable values
        diagnose=False,
    )
    logger.debug(f"Debug log at {log_path}")
    return log_path
