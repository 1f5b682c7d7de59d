from __future__ import annotations

import os
import sys
from pathlib import Path

from .config import UsageConfig


def cursor_user_data_path() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Cursor" / "User"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / "Cursor" / "User"
    return home / ".config" / "Cursor" / "User"


def state_db_path(config: UsageConfig | None = None) -> Path:
    if config is not None and config.state_db_path:
        return Path(config.state_db_path).expanduser()
    return cursor_user_data_path() / "globalStorage" / "state.vscdb"


def workspace_storage_path(config: UsageConfig | None = None) -> Path:
    if config is not None and config.workspace_storage_path:
        return Path(config.workspace_storage_path).expanduser()
    return cursor_user_data_path() / "workspaceStorage"


def workspace_dirs(config: UsageConfig | None = None) -> list[Path]:
    root = workspace_storage_path(config)
    try:
        entries = sorted(root.iterdir())
    except OSError:
        return []
    return [entry for entry in entries if entry.is_dir()]
