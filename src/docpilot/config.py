"""Configuration and directory management for docpilot."""

import os
from pathlib import Path

DOCPILOT_DIR = Path(os.environ.get("DOCPILOT_HOME", Path.home() / ".docpilot"))
SESSIONS_DIR = DOCPILOT_DIR / "sessions"
BACKUPS_DIR = DOCPILOT_DIR / "backups"

# Seconds between cooperative auto-saves of the current session
DEFAULT_AUTO_SAVE_INTERVAL = 30

# Backups retained per session id
DEFAULT_MAX_BACKUPS = 5

# Age after which stopped sessions and backups are eligible for cleanup
DEFAULT_CLEANUP_AGE_DAYS = 30


def ensure_dirs() -> None:
    """Ensure the docpilot directory structure exists."""
    DOCPILOT_DIR.mkdir(parents=True, exist_ok=True)
    SESSIONS_DIR.mkdir(parents=True, exist_ok=True)
    BACKUPS_DIR.mkdir(parents=True, exist_ok=True)
