from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import ClientRuntimeConfig

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def _clean_optional_path(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def configure_logging(
    cfg: ClientRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
    interactive: bool = False,
) -> None:
    """Configure Python logging for p2pmsg.

    In interactive mode the console handler only shows warnings, so log
    lines do not interleave with the chat transcript; the file handler (if
    any) still gets the configured level.
    """

    level = parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)

    fmt = str(cfg.log_format).strip() or "%(asctime)s %(levelname)s %(name)s: %(message)s"
    formatter = logging.Formatter(fmt=fmt, datefmt=_clean_optional_path(cfg.log_datefmt))

    handlers: list[logging.Handler] = []

    if cfg.log_console:
        console = logging.StreamHandler()
        if interactive:
            console.setLevel(max(level, logging.WARNING))
        handlers.append(console)

    log_file = _clean_optional_path(override_file) if override_file is not None else None
    if log_file is None:
        log_file = _clean_optional_path(cfg.log_file)

    if log_file:
        p = Path(os.path.expanduser(log_file))
        p.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(p, encoding="utf-8"))
        try:
            os.chmod(p, 0o600)
        except OSError:
            pass

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    # Reticulum routes its own log output through the "RNS" logger when embedded.
    logging.getLogger("RNS").setLevel(rns_level)

    logging.captureWarnings(True)
