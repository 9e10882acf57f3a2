"""Test configuration helpers."""

from __future__ import annotations

import os
import sys
from pathlib import Path


def _ensure_project_root_on_path() -> None:
    """Add the repository root to ``sys.path`` when running ``pytest`` as a script."""

    root = Path(__file__).resolve().parents[1]
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


def _ensure_required_settings() -> None:
    """Provide the settings ``get_settings()`` refuses to start without."""

    os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")
    os.environ.setdefault("OWNER_TELEGRAM_ID", "528101001")
    os.environ.setdefault("ATLANTIC_API_KEY", "test-api-key")
    os.environ.setdefault("TELEGRAM_WEBHOOK_SECRET", "test-secret")


_ensure_project_root_on_path()
_ensure_required_settings()
