"""Logger configuration for reposync."""

import sys
from pathlib import Path

from loguru import logger


def setup_logger(
    log_file: str | Path | None = None,
    verbose: bool = False,
    rotation: str = "10 MB",
) -> None:
    """Configure loguru with an append-only file sink and optional console output.

    Args:
        log_file: Path to the run log. Parent directories are created.
        verbose: Also echo DEBUG output to stderr.
        rotation: Log rotation size (e.g., "10 MB").
    """
    # Remove default handler
    logger.remove()

    if verbose:
        logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level="DEBUG",
            colorize=True,
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation=rotation,
            mode="a",
            encoding="utf-8",
            backtrace=True,
            diagnose=False,
        )

    logger.debug(f"Logger initialized (file={log_file}, verbose={verbose})")
