"""Logging configuration for workdispatch."""

import logging
from pathlib import Path


def setup_logging(log_file: str = "log/workdispatch.log", level: int = logging.INFO) -> None:
    """Setup logging to a file and stderr."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
        logging.StreamHandler(),
    ]

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("workdispatch").setLevel(level)

    logging.info("=" * 60)
    logging.info(f"workdispatch logging started. Writing to {log_path.absolute()}")
    logging.info("=" * 60)
