# core/logging.py
# -*- coding: utf-8 -*-

import sys
import json
import logging
from typing import Any, Dict

from .clock import utcnow
from .config import LOG_DIR

# ------------------------------------------------
# Terminal logger
# ------------------------------------------------
logger = logging.getLogger("civic_pipeline")
logger.setLevel(logging.DEBUG)

if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_event(issue_id: str, payload: Dict[str, Any]) -> None:
    """
    Append one JSONL record to the per-issue event trail.

    Used for after-the-fact analysis of pipeline decisions
    (classification, duplicates, routing). Never raises.
    """
    record = {
        "timestamp": utcnow().isoformat(),
        "issue_id": issue_id,
        **payload,
    }
    log_path = LOG_DIR / f"{issue_id}.jsonl"

    try:
        with log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        logger.warning(f"event log write failed for {issue_id}: {e}")
