from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from firebase_admin import firestore

from tts_pipeline.key_pool import DEFAULT_PROVIDER, ApiKeyRecord, parse_api_keys

API_KEYS_COLLECTION = "api_keys"


def _as_non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


class InMemoryKeyStore:
    """Process-local credential table, used for local runs and tests."""

    def __init__(self, records: Iterable[ApiKeyRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, dict[str, Any]] = {}
        for record in records:
            self._rows[record.id] = {
                "provider": record.provider,
                "key_value": record.secret_value,
                "is_active": bool(record.is_active),
                "error_count": int(record.error_count),
                "updated_at": None,
            }

    @classmethod
    def from_keys(cls, keys: Iterable[str], provider: str = DEFAULT_PROVIDER) -> "InMemoryKeyStore":
        return cls(
            ApiKeyRecord(id=f"env-{index}", provider=provider, secret_value=key)
            for index, key in enumerate(keys)
        )

    @classmethod
    def from_env_values(cls, keys_raw: str, single_key: str = "", provider: str = DEFAULT_PROVIDER) -> "InMemoryKeyStore":
        keys = parse_api_keys(keys_raw)
        for token in parse_api_keys(single_key):
            if token not in keys:
                keys.append(token)
        return cls.from_keys(keys, provider=provider)

    def get(self, record_id: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            row = self._rows.get(record_id)
            if row is None:
                return None
            return self._to_record(record_id, row)

    def all_records(self) -> list[ApiKeyRecord]:
        with self._lock:
            return [self._to_record(record_id, row) for record_id, row in self._rows.items()]

    def fetch_active(self, provider: str) -> list[ApiKeyRecord]:
        with self._lock:
            records = [
                self._to_record(record_id, row)
                for record_id, row in self._rows.items()
                if row["provider"] == provider and row["is_active"]
            ]
        return sorted(records, key=lambda record: record.error_count)

    def reset_error_count(self, record_id: str) -> None:
        self._update(record_id, error_count=0)

    def increment_error_count(self, record_id: str) -> None:
        with self._lock:
            row = self._require_row(record_id)
            row["error_count"] = int(row["error_count"]) + 1
            row["updated_at"] = datetime.now(timezone.utc).isoformat()

    def deactivate(self, record_id: str) -> None:
        self._update(record_id, is_active=False)

    def _update(self, record_id: str, **fields: Any) -> None:
        with self._lock:
            row = self._require_row(record_id)
            row.update(fields)
            row["updated_at"] = datetime.now(timezone.utc).isoformat()

    def _require_row(self, record_id: str) -> dict[str, Any]:
        row = self._rows.get(record_id)
        if row is None:
            raise KeyError(f"Unknown API key record: {record_id}")
        return row

    @staticmethod
    def _to_record(record_id: str, row: dict[str, Any]) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=record_id,
            provider=str(row["provider"]),
            secret_value=str(row["key_value"]),
            is_active=bool(row["is_active"]),
            error_count=int(row["error_count"]),
        )


class FirestoreKeyStore:
    """Credential table kept in the Firestore ``api_keys`` collection."""

    def __init__(self, db: Any, *, collection: str = API_KEYS_COLLECTION, timeout_sec: float = 15.0) -> None:
        self._db = db
        self._collection_name = collection
        self._timeout_sec = max(1.0, float(timeout_sec))

    def _collection(self) -> Any:
        return self._db.collection(self._collection_name)

    def fetch_active(self, provider: str) -> list[ApiKeyRecord]:
        query = (
            self._collection()
            .where(filter=firestore.FieldFilter("provider", "==", provider))
            .where(filter=firestore.FieldFilter("is_active", "==", True))
        )
        records: list[ApiKeyRecord] = []
        for doc in query.stream(timeout=self._timeout_sec):
            payload = doc.to_dict() or {}
            secret = str(payload.get("key_value") or "").strip()
            if not secret:
                continue
            records.append(
                ApiKeyRecord(
                    id=str(doc.id),
                    provider=provider,
                    secret_value=secret,
                    is_active=True,
                    error_count=_as_non_negative_int(payload.get("error_count")),
                )
            )
        # Ordered client-side so the query needs no composite index.
        return sorted(records, key=lambda record: record.error_count)

    def reset_error_count(self, record_id: str) -> None:
        self._update(record_id, {"error_count": 0})

    def increment_error_count(self, record_id: str) -> None:
        self._update(record_id, {"error_count": firestore.Increment(1)})

    def deactivate(self, record_id: str) -> None:
        self._update(record_id, {"is_active": False})

    def _update(self, record_id: str, fields: dict[str, Any]) -> None:
        self._collection().document(record_id).update(
            {**fields, "updated_at": firestore.SERVER_TIMESTAMP},
            timeout=self._timeout_sec,
        )
