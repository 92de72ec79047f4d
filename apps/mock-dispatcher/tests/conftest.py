"""Test bootstrap for mock-dispatcher."""

from __future__ import annotations

import sys
from pathlib import Path

APP_ROOT = Path(__file__).resolve().parents[1]
path_str = str(APP_ROOT)
if path_str not in sys.path:
    sys.path.insert(0, path_str)
