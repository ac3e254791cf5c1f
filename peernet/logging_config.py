from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List, Optional, Union

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int = logging.INFO) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default

    mapping = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "NOTSET": logging.NOTSET,
    }
    if text in mapping:
        return mapping[text]

    try:
        return int(text)
    except ValueError:
        return default


def configure_logging(
    level: Union[int, str, None] = logging.INFO,
    log_file: Union[str, Path, None] = None,
    *,
    console: bool = False,
    fmt: Optional[str] = None,
) -> None:
    """Install handlers on the root logger.

    The chat UI owns the terminal, so by default records only go to
    *log_file*. Safe to call more than once; earlier handlers are replaced.
    """
    handlers: List[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler())

    if log_file:
        p = Path(os.path.expanduser(str(log_file)))
        p.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(p, encoding="utf-8"))
        try:
            os.chmod(p, 0o600)
        except OSError:
            pass

    if not handlers:
        handlers.append(logging.NullHandler())

    formatter = logging.Formatter(fmt=fmt or DEFAULT_FORMAT)
    for h in handlers:
        h.setFormatter(formatter)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(parse_level(level))

    # Textual and asyncio are chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.captureWarnings(True)
