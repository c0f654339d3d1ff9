"""
File I/O utilities: atomic writes, backups, and structured document loading.

All functions take explicit paths.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from ..exceptions import FileIOError


def safe_write(filepath: str, content: str, encoding: str = "utf-8") -> None:
    """Write content atomically, creating parent directories as needed.

    The content goes to a temp file in the same directory which then
    replaces the target, so readers never observe a half-written file.
    """
    directory = os.path.dirname(filepath) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.basename(filepath))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, filepath)
    except OSError as e:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise FileIOError(f"Cannot write {filepath}: {e}") from e


def backup_file(file_path: str, backup_dir: str | None = None) -> str | None:
    """Create a timestamped backup of a file. Returns backup path or None."""
    src = Path(file_path)
    if not src.exists():
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_name = f"{src.name}.backup.{timestamp}"

    if backup_dir:
        backup_path = Path(backup_dir) / backup_name
        backup_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        backup_path = src.parent / backup_name

    try:
        shutil.copy2(str(src), str(backup_path))
    except OSError as e:
        logger.warning(f"Backup of {file_path} failed: {e}")
        return None
    return str(backup_path)


def safe_write_with_backup(filepath: str, content: str, encoding: str = "utf-8") -> str | None:
    """Write to file with automatic backup of existing content."""
    backup_path = backup_file(filepath)
    safe_write(filepath, content, encoding)
    return backup_path


def load_document(path: str) -> dict[str, Any]:
    """Load a JSON or YAML document, chosen by file extension."""
    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, encoding="utf-8") as f:
            if ext in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
    except FileNotFoundError as e:
        raise FileIOError(f"Document not found: {path}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise FileIOError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise FileIOError(f"Expected a mapping at the top of {path}, got {type(data).__name__}")
    return data


def dump_document(path: str, data: dict[str, Any], backup: bool = False) -> str | None:
    """Write *data* as JSON or YAML (by extension) through ``safe_write``.

    With *backup*, existing content is first copied aside and the backup
    path is returned.
    """
    ext = os.path.splitext(path)[1].lower()
    if ext in (".yaml", ".yml"):
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    else:
        content = json.dumps(data, indent=2) + "\n"
    if backup:
        return safe_write_with_backup(path, content)
    safe_write(path, content)
    return None
