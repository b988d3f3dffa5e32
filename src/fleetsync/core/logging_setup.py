"""
Central logging for FleetSync.

- Console handler on stderr: INFO..CRITICAL by default
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Per-run file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction in both the message and its %-args
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s document=%(document)s | "
    "%(message)s"
)

_CONTEXT_FIELDS = ("run_id", "action", "document")


class MaskSecretsFilter(logging.Filter):
    """
    Redact common secrets (bearer tokens, API keys, passwords) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @classmethod
    def mask(cls, text: str) -> str:
        for pat in cls._patterns:
            text = pat.sub(r"\1***REDACTED***", text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.mask(v) if isinstance(v, str) else v for k, v in record.args.items()}
            else:
                record.args = tuple(self.mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        return True


class _ContextDefaults(logging.Filter):
    """Fill context fields for records that did not come through the adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in _CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _decorate(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(_ContextDefaults())
    handler.addFilter(MaskSecretsFilter())
    return handler


def _reset_console(base: logging.Logger, level: int, formatter: logging.Formatter) -> None:
    """
    Keep exactly ONE StreamHandler bound to the current sys.stderr
    (pytest swaps stdio between tests; repeated calls must not duplicate output).
    """
    for h in list(base.handlers):
        if type(h) is logging.StreamHandler:
            base.removeHandler(h)
            h.close()
    base.addHandler(_decorate(logging.StreamHandler(stream=sys.stderr), level, formatter))


def _reset_app_file(base: logging.Logger, base_dir: str, level: int, formatter: logging.Formatter) -> None:
    """Point the rotating handler at <base_dir>/app.log, replacing one aimed elsewhere."""
    os.makedirs(base_dir, exist_ok=True)
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))
    Path(desired).touch(exist_ok=True)

    keep = False
    for h in list(base.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) == desired:
                h.setLevel(level)
                keep = True
            else:
                base.removeHandler(h)
                h.close()
    if not keep:
        rh = logging.handlers.TimedRotatingFileHandler(
            desired, when="midnight", backupCount=14, encoding="utf-8", utc=True
        )
        base.addHandler(_decorate(rh, level, formatter))


def build_logger(
    *,
    name: str = "fs",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter carrying run context.

    - Base logger `<name>` holds the console and rotating file handlers; the
      fallback `fs.<component>` loggers of library modules land there too.
    - Child logger `<name>.run.<action>.<run_id>` adds the per-run file and
      propagates to the base. Pass the returned adapter into components.
    """
    formatter = _utc_formatter(_FORMAT)
    flevel = _level(file_level, logging.DEBUG)

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _reset_console(base, _level(console_level, logging.INFO), formatter)
    _reset_app_file(base, base_dir, flevel, formatter)

    child = logging.getLogger(f"{name}.run.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    if not getattr(child, "_fs_run_configured", False):
        dated_dir = os.path.join(base_dir, datetime.now(timezone.utc).strftime("%Y-%m-%d"))
        os.makedirs(dated_dir, exist_ok=True)
        run_file = os.path.join(dated_dir, f"{action}_{run_id}.log")
        child.addHandler(_decorate(logging.FileHandler(run_file, encoding="utf-8"), flevel, formatter))
        child._fs_run_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {"run_id": run_id, "action": action, "document": (extra or {}).get("document", "-")},
    )
    adapter.debug("Logger initialised")
    return adapter

