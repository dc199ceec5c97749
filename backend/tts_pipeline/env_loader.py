from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

_ENV_FILE_OVERRIDE_VAR = "TTS_ENV_FILE"


def _unquote_env_value(raw_value: str) -> str:
    trimmed = str(raw_value or "").strip()
    if len(trimmed) < 2:
        return trimmed

    quote = trimmed[0]
    if quote not in {'"', "'"} or not trimmed.endswith(quote):
        # Unquoted values may carry a trailing comment.
        hash_index = trimmed.find(" #")
        return trimmed[:hash_index].rstrip() if hash_index >= 0 else trimmed

    inner = trimmed[1:-1]
    if quote == '"':
        inner = (
            inner.replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\\\", "\\")
        )
    return inner


def _is_env_name(name: str) -> bool:
    if not name or name[0].isdigit():
        return False
    return name.replace("_", "A").isalnum()


def apply_env_file(path: Path) -> list[str]:
    """Fill unset or empty variables from a dotenv file; returns the names applied."""
    if not path.is_file():
        return []
    try:
        lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError:
        return []

    applied: list[str] = []
    for line in lines:
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        if trimmed.startswith("export "):
            trimmed = trimmed[7:].strip()
        name, sep, raw_value = trimmed.partition("=")
        name = name.strip()
        if not sep or not _is_env_name(name):
            continue
        if str(os.getenv(name) or "").strip():
            continue
        os.environ[name] = _unquote_env_value(raw_value)
        applied.append(name)
    return applied


def _service_root(anchor: Path) -> Path:
    for parent in [anchor.parent, *anchor.parents]:
        if parent.name.lower() == "backend":
            return parent
    return anchor.parent


def load_service_env_files(current_file: Optional[Path] = None) -> list[Path]:
    """Load `.env` files for the service, nearest first.

    Order: an explicit ``TTS_ENV_FILE``, then ``backend/.env``, then the
    repository root ``.env``. Values already present in the environment win.
    """
    anchor = Path(current_file or __file__).resolve()
    backend_root = _service_root(anchor)
    env_files: list[Path] = []
    override = str(os.getenv(_ENV_FILE_OVERRIDE_VAR) or "").strip()
    if override:
        env_files.append(Path(override).expanduser())
    env_files.extend([backend_root / ".env", backend_root.parent / ".env"])
    for env_path in env_files:
        apply_env_file(env_path)
    return env_files
