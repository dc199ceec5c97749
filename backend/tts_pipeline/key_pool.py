"""Provider credential pool.

A ``KeyPool`` is a per-batch snapshot of the active credentials, healthiest
first, with a rotating cursor. It is never shared between batches; the only
state that outlives a batch lives in the credential store and is written
through ``KeyPoolManager``.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Any, Collection, Iterable, Optional, Protocol

from tts_pipeline.events import emit_stage_event

GEMINI_API_KEY_PATTERN = re.compile(r"^AIza[A-Za-z0-9_-]{30,}$")
DEFAULT_PROVIDER = "gemini"
REQUEST_KEY_ID = "request"


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    provider: str
    secret_value: str
    is_active: bool = True
    error_count: int = 0
    persistent: bool = True

    @property
    def fingerprint(self) -> str:
        return api_key_fingerprint(self.secret_value)


class KeyStore(Protocol):
    def fetch_active(self, provider: str) -> list[ApiKeyRecord]: ...

    def reset_error_count(self, record_id: str) -> None: ...

    def increment_error_count(self, record_id: str) -> None: ...

    def deactivate(self, record_id: str) -> None: ...


def is_valid_api_key(token: str) -> bool:
    return bool(GEMINI_API_KEY_PATTERN.match(str(token or "").strip()))


def parse_api_keys(raw: str) -> list[str]:
    if not str(raw or "").strip():
        return []
    out: list[str] = []
    seen: set[str] = set()
    for item in re.split(r"[\r\n,]+", str(raw)):
        token = str(item or "").strip()
        if not token or token in seen or not is_valid_api_key(token):
            continue
        seen.add(token)
        out.append(token)
    return out


def api_key_fingerprint(api_key: str) -> str:
    token = str(api_key or "").strip()
    if not token:
        return "none"
    if len(token) <= 12:
        return token
    return f"{token[:8]}...{token[-4:]}"


class KeyPool:
    def __init__(self, records: Iterable[ApiKeyRecord]) -> None:
        # Stable sort keeps caller-pinned records ahead of equally healthy ones.
        self._records: tuple[ApiKeyRecord, ...] = tuple(
            sorted((record for record in records if record.is_active), key=lambda record: int(record.error_count))
        )
        self._cursor = 0
        self._quarantined: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> tuple[ApiKeyRecord, ...]:
        return self._records

    def is_empty(self) -> bool:
        return len(self._records) == 0

    def next(self, exclude: Optional[Collection[str]] = None) -> Optional[ApiKeyRecord]:
        excluded = exclude or ()
        with self._lock:
            size = len(self._records)
            for _ in range(size):
                record = self._records[self._cursor % size]
                self._cursor = (self._cursor + 1) % size
                if record.id in self._quarantined or record.id in excluded:
                    continue
                return record
        return None

    def quarantine(self, record: ApiKeyRecord) -> None:
        with self._lock:
            self._quarantined.add(record.id)

    def usable_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records if record.id not in self._quarantined)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "index": index,
                    "id": record.id if record.persistent else REQUEST_KEY_ID,
                    "fingerprint": record.fingerprint,
                    "errorCount": int(record.error_count),
                    "quarantined": record.id in self._quarantined,
                    "persistent": record.persistent,
                }
                for index, record in enumerate(self._records)
            ]


class KeyPoolManager:
    def __init__(self, store: KeyStore, *, provider: str = DEFAULT_PROVIDER, trace_id: str = "") -> None:
        self.store = store
        self.provider = provider
        self.trace_id = trace_id

    def load(self, request_key: Optional[str] = None) -> KeyPool:
        records: list[ApiKeyRecord] = []
        token = str(request_key or "").strip()
        if token and is_valid_api_key(token):
            records.append(ApiKeyRecord(id=REQUEST_KEY_ID, provider=self.provider, secret_value=token, persistent=False))
        try:
            stored = self.store.fetch_active(self.provider)
        except Exception as exc:  # noqa: BLE001
            emit_stage_event(self.trace_id, "key_pool", "load_failed", {"error": str(exc)[:200]})
            stored = []
        known = {record.secret_value for record in records}
        for record in stored:
            if not record.is_active or record.secret_value in known:
                continue
            known.add(record.secret_value)
            records.append(record)
        pool = KeyPool(records)
        emit_stage_event(self.trace_id, "key_pool", "loaded", {"provider": self.provider, "keyPoolSize": len(pool)})
        return pool

    def report_success(self, record: ApiKeyRecord) -> None:
        if not record.persistent:
            return
        self._write(record, "reset_error_count", self.store.reset_error_count)

    def report_failure(self, record: ApiKeyRecord, fatal: bool) -> None:
        if not record.persistent:
            return
        if fatal:
            self._write(record, "deactivate", self.store.deactivate)
        else:
            self._write(record, "increment_error_count", self.store.increment_error_count)

    def _write(self, record: ApiKeyRecord, action: str, writer: Any) -> None:
        try:
            writer(record.id)
        except Exception as exc:  # noqa: BLE001
            emit_stage_event(
                self.trace_id,
                "key_store",
                "write_failed",
                {"action": action, "keyFingerprint": record.fingerprint, "error": str(exc)[:200]},
            )
            return
        emit_stage_event(self.trace_id, "key_store", action, {"keyFingerprint": record.fingerprint})
