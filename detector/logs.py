from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the root logger: stderr stream, plus detector.log when log_dir is set."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    fmt = logging.Formatter(FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    root.addHandler(stream_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "detector.log", encoding="utf-8")
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    # websockets logs every handshake at INFO
    logging.getLogger("websockets").setLevel(logging.WARNING)
    return root
