from __future__ import annotations

import hashlib

DEFAULT_DIRECTORY = "tts"
HASH_PREFIX_BYTES = 8


def content_hash(text: str, voice: str) -> str:
    """Deterministic storage key for a (text, voice) pair: 16 hex chars of SHA-256."""
    digest = hashlib.sha256(f"{text}{voice}".encode("utf-8")).digest()
    return digest[:HASH_PREFIX_BYTES].hex()


def normalize_directory(directory: str | None) -> str:
    folder = str(directory or "").strip().rstrip("/")
    return folder or DEFAULT_DIRECTORY


def storage_path(directory: str | None, text: str, voice: str, extension: str) -> str:
    return f"{normalize_directory(directory)}/{content_hash(text, voice)}.{extension.lstrip('.')}"
