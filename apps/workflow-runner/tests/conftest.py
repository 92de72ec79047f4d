"""Test bootstrap for workflow-runner."""

from __future__ import annotations

import sys
from pathlib import Path

APPS_DIR = Path(__file__).resolve().parents[2]
for package in ["workflow-runner", "mock-dispatcher"]:
    package_root = APPS_DIR / package
    path_str = str(package_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

TESTS_DIR = str(Path(__file__).resolve().parent)
if TESTS_DIR not in sys.path:
    sys.path.insert(0, TESTS_DIR)
