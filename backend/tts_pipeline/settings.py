from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from tts_pipeline.key_pool import DEFAULT_PROVIDER
from tts_pipeline.retry import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_JITTER_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    RetryPolicy,
)

KEY_STORE_CHOICES = ("memory", "firestore")


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return str(env.get(name) or default).strip()


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = _env_str(env, name)
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass(frozen=True)
class PipelineSettings:
    gemini_api_keys: str = ""
    gemini_api_key: str = ""
    key_store: str = "memory"
    key_provider: str = DEFAULT_PROVIDER
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    request_timeout_ms: int = 45000
    multi_speaker_timeout_ms: int = 90000
    batch_max_items: int = 64
    batch_max_parallel: int = 4
    storage_bucket: str = ""
    storage_timeout_sec: int = 30
    service_account_json: str = ""
    catalog_path: Optional[str] = None
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineSettings":
        source = os.environ if env is None else env
        key_store = _env_str(source, "TTS_KEY_STORE", "memory").lower()
        if key_store not in KEY_STORE_CHOICES:
            raise ValueError(f"TTS_KEY_STORE must be one of {', '.join(KEY_STORE_CHOICES)}; got {key_store!r}.")
        base_delay_ms = _env_int(source, "TTS_RETRY_BASE_MS", DEFAULT_BASE_DELAY_MS, 0)
        return cls(
            gemini_api_keys=_env_str(source, "GEMINI_API_KEYS"),
            gemini_api_key=_env_str(source, "GEMINI_API_KEY"),
            key_store=key_store,
            key_provider=_env_str(source, "TTS_KEY_PROVIDER", DEFAULT_PROVIDER).lower() or DEFAULT_PROVIDER,
            retry=RetryPolicy(
                max_retries=_env_int(source, "TTS_RETRY_MAX_RETRIES", DEFAULT_MAX_RETRIES, 0),
                base_delay_ms=base_delay_ms,
                max_delay_ms=_env_int(source, "TTS_RETRY_MAX_DELAY_MS", DEFAULT_MAX_DELAY_MS, base_delay_ms),
                jitter_ms=_env_int(source, "TTS_RETRY_JITTER_MS", DEFAULT_JITTER_MS, 0),
            ),
            request_timeout_ms=_env_int(source, "GEMINI_TTS_REQUEST_TIMEOUT_MS", 45000, 1000),
            multi_speaker_timeout_ms=_env_int(source, "GEMINI_TTS_MULTI_REQUEST_TIMEOUT_MS", 90000, 1000),
            batch_max_items=_env_int(source, "TTS_BATCH_MAX_ITEMS", 64, 1),
            batch_max_parallel=_env_int(source, "TTS_BATCH_MAX_PARALLEL", 4, 1),
            storage_bucket=_env_str(source, "FIREBASE_STORAGE_BUCKET"),
            storage_timeout_sec=_env_int(source, "TTS_STORAGE_TIMEOUT_SEC", 30, 1),
            service_account_json=_env_str(source, "FIREBASE_SERVICE_ACCOUNT_JSON"),
            catalog_path=_env_str(source, "TTS_CATALOG_PATH") or None,
            cors_origins=_split_origins(_env_str(source, "VF_CORS_ORIGINS", "*")) or ["*"],
        )
