"""JSON file helpers shared by the file-backed stores."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def write_json_file(path: Path, data: Any) -> None:
    """Write compact JSON atomically (temp file + rename)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp_path, path)


def read_json_list(path: Path) -> list[dict[str, Any]]:
    """Read a whole-file JSON array; a missing or corrupt file reads as empty."""

    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON collection: %s", path)
        return []
    if not isinstance(raw, list):
        logger.warning("Ignoring non-array JSON collection: %s", path)
        return []
    return [item for item in raw if isinstance(item, dict)]


def read_json_object(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON document: %s", path)
        return None
    return raw if isinstance(raw, dict) else None


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read newline-delimited JSON, skipping malformed lines individually."""

    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line in path.read_text("utf-8").splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records
