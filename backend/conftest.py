from __future__ import annotations

import os
import sys
from pathlib import Path

os.environ.setdefault("OTEL_SDK_DISABLED", "true")
os.environ.setdefault("SLOTFILL_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SLOTFILL_DRAFT_BACKEND", "memory")

BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
