import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler


def setup_logging(
    output_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> logging.Logger:
    """
    Setup logging configuration for audiopipe.

    Creates output directory and audiopipe.log file.
    Returns configured logger instance.

    Args:
        output_dir: Directory where encoded files are written
        debug: If True, enable DEBUG level logging
        log_path: Optional path to log file (overrides output_dir)
        console: Also log to stderr through rich (used when the dashboard is off)
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (output_dir / "audiopipe.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    handlers = [logging.FileHandler(log_file)]
    if console:
        handlers.append(RichHandler(show_path=False, rich_tracebacks=True))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
