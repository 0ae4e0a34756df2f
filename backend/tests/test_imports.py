"""
Tests that each service module imports cleanly on its own.

Every check runs in a fresh interpreter so import order from other tests
cannot hide a cycle.
"""

import subprocess
import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]


@pytest.mark.parametrize("module", [
    "app.services.llm.extraction_service",
    "app.services.duplicate_detection",
    "app.orchestration.triage.machine",
    "app.services.coordination",
    "app.services.intake",
    "main",
])
def test_module_imports_first(module):
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=BACKEND_DIR,
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert result.returncode == 0, result.stderr
