"""Logging helpers for consistent console output."""
import logging
import sys
import tempfile
from pathlib import Path
from typing import Optional

NOISY_LOGGERS = ("urllib3", "PIL")


def _file_handler(log_path: Path) -> Optional[logging.Handler]:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as exc:
        fallback = Path(tempfile.gettempdir()) / "pitchdeck.run.log"
        try:
            handler = logging.FileHandler(fallback, mode="a", encoding="utf-8")
        except OSError:
            print(f"[WARN] Cannot write log file {log_path} ({exc}); file logging disabled.", file=sys.stderr)
            return None
        print(f"[WARN] Cannot write log file {log_path} ({exc}); logging to {fallback}.", file=sys.stderr)
        return handler


def setup_logging(verbose: bool = False, log_path: Optional[Path] = None) -> None:
    """Configure root logging for the CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler()]
    if log_path is not None:
        handler = _file_handler(Path(log_path))
        if handler is not None:
            handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
            handlers.append(handler)
    logging.basicConfig(
        level=level,
        format="[%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
