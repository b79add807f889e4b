# core/config.py
# -*- coding: utf-8 -*-

import os
from pathlib import Path

from dotenv import load_dotenv

# load .env before anything reads the environment
load_dotenv()

# --------------------------------
# Paths / log directory
# --------------------------------

# project root
BASE_DIR = Path(__file__).resolve().parent.parent

# JSONL event trail (one file per issue)
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "data" / "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Citizen / authority uploads. Image references in issues are resolved
# relative to this directory.
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads")))

# --------------------------------
# Vision classification oracle (OpenAI)
# --------------------------------

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
ORACLE_MODEL = os.getenv("ORACLE_MODEL", "gpt-4o-mini")
ORACLE_TEMPERATURE = float(os.getenv("ORACLE_TEMPERATURE", "0.1"))

# Provider quota: requests per sliding 60s window
ORACLE_RPM_LIMIT = int(os.getenv("ORACLE_RPM_LIMIT", "10"))
ORACLE_WINDOW_SECONDS = 60.0

# Per-attempt timeout, retry budget and backoff base (2s, 4s, 8s)
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "15"))
ORACLE_MAX_RETRIES = int(os.getenv("ORACLE_MAX_RETRIES", "3"))
ORACLE_BASE_DELAY = float(os.getenv("ORACLE_BASE_DELAY", "2.0"))

# Largest image we are willing to send (20MB)
MAX_IMAGE_BYTES = 20 * 1024 * 1024

# --------------------------------
# Classification / duplicate thresholds
# --------------------------------

REVIEW_CONFIDENCE_THRESHOLD = 0.6
MAX_CONFIDENCE = 0.95

DUPLICATE_RADIUS_METERS = float(os.getenv("DUPLICATE_RADIUS_METERS", "100"))
DUPLICATE_TIME_WINDOW_HOURS = int(os.getenv("DUPLICATE_TIME_WINDOW_HOURS", "24"))
DUPLICATE_MIN_SIMILARITY = float(os.getenv("DUPLICATE_MIN_SIMILARITY", "0.4"))
DUPLICATE_MAX_IMAGE_COMPARISONS = int(os.getenv("DUPLICATE_MAX_IMAGE_COMPARISONS", "5"))
DUPLICATE_IMAGE_CONFIDENCE = float(os.getenv("DUPLICATE_IMAGE_CONFIDENCE", "0.70"))

# --------------------------------
# ETA estimator
# --------------------------------

ETA_HISTORY_LIMIT = 50
ETA_LOAD_HOURS_PER_OPEN_ISSUE = 1.0
ETA_HISTORY_WEIGHT = 0.6
