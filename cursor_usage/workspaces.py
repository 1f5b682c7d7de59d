from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from .store import WorkspaceInfo, open_record_store
from .store.utils import parse_workspace_folder_uri

logger = logging.getLogger(__name__)

WORKSPACE_INDEX_KEY = "composer.composerData"


def read_workspace_folder(workspace_dir: Path) -> str | None:
    try:
        data = json.loads((workspace_dir / "workspace.json").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    folder = data.get("folder")
    if not isinstance(folder, str) or not folder:
        return None
    return parse_workspace_folder_uri(folder)


def read_workspace_conversation_ids(workspace_dir: Path) -> list[str]:
    with open_record_store(workspace_dir / "state.vscdb") as store:
        if store is None:
            return []
        index = store.get_item_json(WORKSPACE_INDEX_KEY)
    if not isinstance(index, dict):
        return []
    composers = index.get("allComposers")
    if not isinstance(composers, list):
        return []
    ids: list[str] = []
    for entry in composers:
        if isinstance(entry, dict) and isinstance(entry.get("composerId"), str):
            ids.append(entry["composerId"])
    return ids


def read_workspace(workspace_dir: Path) -> WorkspaceInfo | None:
    project_path = read_workspace_folder(workspace_dir)
    if not project_path:
        return None
    conversation_ids = read_workspace_conversation_ids(workspace_dir)
    if not conversation_ids:
        return None
    return WorkspaceInfo(
        workspace_hash=workspace_dir.name,
        project_path=project_path,
        conversation_ids=conversation_ids,
    )


def build_workspace_map(workspace_dirs: Iterable[Path]) -> dict[str, WorkspaceInfo]:
    mapping: dict[str, WorkspaceInfo] = {}
    for workspace_dir in workspace_dirs:
        info = read_workspace(workspace_dir)
        if info is None:
            continue
        for conversation_id in info.conversation_ids:
            mapping[conversation_id] = info
    logger.debug("workspace map built", extra={"conversations": len(mapping)})
    return mapping
