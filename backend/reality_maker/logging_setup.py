from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(project_id)s | %(stage)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_PROJECT_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_project_id", default=None)
LOG_STAGE: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_stage", default=None)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.project_id = LOG_PROJECT_ID.get() or "-"
        record.stage = LOG_STAGE.get() or "-"
        return True


@contextmanager
def log_context(project_id: Optional[str] = None, stage: Optional[str] = None) -> Iterator[None]:
    """Tag every record emitted inside the block with the project and stage."""
    tokens = []
    if project_id is not None:
        tokens.append((LOG_PROJECT_ID, LOG_PROJECT_ID.set(project_id)))
    if stage is not None:
        tokens.append((LOG_STAGE, LOG_STAGE.set(stage)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _coerce_level(level: object) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level:
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def configure_logging(level: object = "info", log_file: str = "", force: bool = False) -> logging.Logger:
    """
    Configure the root logger for the worker process.

    Console output is always on; ``log_file`` adds a file handler.
    """
    root = logging.getLogger()
    if getattr(root, "_reality_maker_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    context_filter = ContextFilter()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(context_filter)
    root.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        root.addHandler(file_handler)

    root.setLevel(_coerce_level(level))
    logging.captureWarnings(True)
    root._reality_maker_configured = True
    return root
