from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from tts_pipeline.codec import EncodedAudio
from tts_pipeline.content_hash import storage_path
from tts_pipeline.errors import UploadFailed, truncate_summary
from tts_pipeline.events import emit_stage_event


@dataclass(frozen=True)
class SynthesisItem:
    item_key: str
    text: str


@dataclass(frozen=True)
class StoredClip:
    item_key: str
    text: str
    sample_rate: int
    content_type: str
    path: str
    url: Optional[str] = None
    inline_audio: Optional[bytes] = None

    @property
    def is_inline(self) -> bool:
        return self.url is None


class ObjectStore(Protocol):
    def upload(self, path: str, data: bytes, content_type: str) -> str: ...


class FirebaseStorageStore:
    """Public objects in a Cloud Storage bucket obtained from firebase-admin."""

    def __init__(self, bucket: Any, *, timeout_sec: float = 30.0) -> None:
        self.bucket = bucket
        self.timeout_sec = max(1.0, float(timeout_sec))

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        blob = self.bucket.blob(path)
        # Same path means same text, voices and codec; keep the first upload.
        if not blob.exists(timeout=self.timeout_sec):
            blob.upload_from_string(data, content_type=content_type, timeout=self.timeout_sec)
            blob.make_public(timeout=self.timeout_sec)
        return str(blob.public_url)


class StoragePublisher:
    def __init__(self, store: Optional[ObjectStore], *, trace_id: str = "") -> None:
        self.store = store
        self.trace_id = trace_id

    def publish(self, item: SynthesisItem, encoded: EncodedAudio, voice: str, directory: Optional[str] = None) -> StoredClip:
        path = storage_path(directory, item.text, voice, encoded.storage_extension)
        try:
            url = self._upload(path, encoded)
        except UploadFailed as exc:
            emit_stage_event(
                self.trace_id,
                "storage",
                "upload_failed",
                {"itemKey": item.item_key, "path": path, "error": exc.summary},
            )
            return StoredClip(
                item_key=item.item_key,
                text=item.text,
                sample_rate=encoded.sample_rate,
                content_type=encoded.content_type,
                path=path,
                inline_audio=encoded.data,
            )
        emit_stage_event(
            self.trace_id,
            "storage",
            "uploaded",
            {"itemKey": item.item_key, "path": path, "bytes": len(encoded.data)},
        )
        return StoredClip(
            item_key=item.item_key,
            text=item.text,
            sample_rate=encoded.sample_rate,
            content_type=encoded.content_type,
            path=path,
            url=url,
        )

    def _upload(self, path: str, encoded: EncodedAudio) -> str:
        if self.store is None:
            raise UploadFailed("Object storage is not configured.")
        try:
            url = self.store.upload(path, encoded.data, encoded.content_type)
        except Exception as exc:  # noqa: BLE001
            raise UploadFailed(truncate_summary(str(exc) or type(exc).__name__)) from exc
        if not str(url or "").strip():
            raise UploadFailed("Object storage returned an empty URL.")
        return str(url)
