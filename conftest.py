"""
Pytest configuration for test discovery and imports.

Ensures src/ is on sys.path so tests can import modules directly, and runs
each test in a scratch directory so log files stay out of the checkout.
"""

import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
SRC_DIR = os.path.join(ROOT_DIR, "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


@pytest.fixture(autouse=True)
def _scratch_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
