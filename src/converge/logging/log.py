# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/converge/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid

def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "converge",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full-trace log file for the run (every command and its output)
      - console handler at INFO (DEBUG with --verbose)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".converge" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("=== converge run started ===")
    logger.info("run_id=%s", run_id)
    logger.info("log_file=%s", log_path)

    return logger, run_id, log_path
