"""Shared pytest setup: isolated database for module-level services."""
from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest


TMP = Path(tempfile.mkdtemp(prefix="freightlink-tests-"))
os.environ["MARKETPLACE_DB_PATH"] = str(TMP / "marketplace.db")
os.environ["AUTH_ENABLED"] = "false"
os.environ["EVENT_WEBHOOK_URL"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from marketplace_helpers import build_marketplace  # noqa: E402


@pytest.fixture()
def marketplace(tmp_path):
    mp = build_marketplace(tmp_path)
    yield mp
    mp.store.close()
