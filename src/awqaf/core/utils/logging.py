"""
Loguru sinks for the CLI and long-running pollers.

The library itself only emits through ``loguru.logger``; configuring sinks
is left to the application entry point.
"""

import sys

from loguru import logger

CONSOLE_FORMAT = "<level>{level: <8}</level> {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} | {message}"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    *,
    rotation: str = "10 MB",
    retention: str = "30 days",
    serialize: bool = False,
) -> list[int]:
    """Replace loguru's sinks with a stderr sink and, optionally, a rotating file.

    Committed ledger mutations are logged at INFO, so keeping an audit trail
    means running with ``level="INFO"`` and a ``log_file``. ``serialize``
    writes the file as one JSON record per line.

    Returns:
        The loguru sink ids, for callers that want to remove them later.
    """
    logger.remove()
    sink_ids = [logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)]
    if log_file:
        sink_ids.append(
            logger.add(
                log_file,
                level=level.upper(),
                format=FILE_FORMAT,
                rotation=rotation,
                retention=retention,
                serialize=serialize,
            )
        )
    return sink_ids
