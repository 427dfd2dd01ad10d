# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/hashiprov/logging/log.py

from __future__ import annotations

import logging
import re
from pathlib import Path
from datetime import datetime, timezone
import uuid

DEFAULT_LOG_DIR = Path.home() / ".hashiprov" / "logs"

# chatty libraries only reach the run log from WARNING upwards
QUIET_LOGGERS = ("paramiko", "urllib3")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _handlers(log_path: Path, verbose: bool) -> list[logging.Handler]:
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # every command, its exit code and stderr
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)
    return [fh, ch]


def _reset(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "hashiprov",
    host: str | None = None,
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    One log file per provisioning run, named after the target host:
    ``<base_dir>/<name>-<host>-<timestamp>-<run_id>.log``.

    Returns (logger, run_id, log_path); the run_id is shared with the
    event observers so log lines and JSON events can be correlated.
    """
    run_id = str(uuid.uuid4())
    base_dir = base_dir or DEFAULT_LOG_DIR
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    label = _UNSAFE.sub("_", host or "localhost")
    log_path = base_dir / f"{name}-{label}-{ts}-{run_id}.log"

    handlers = _handlers(log_path, verbose)

    logger = logging.getLogger(name)
    _reset(logger)
    logger.setLevel(logging.DEBUG)
    for h in handlers:
        logger.addHandler(h)

    for lib in QUIET_LOGGERS:
        lib_logger = logging.getLogger(lib)
        _reset(lib_logger)
        lib_logger.setLevel(logging.WARNING)
        for h in handlers:
            lib_logger.addHandler(h)

    logger.info("=== hashiprov run %s against %s ===", run_id, host or "localhost")
    logger.info("log_file=%s", log_path)

    return logger, run_id, log_path
