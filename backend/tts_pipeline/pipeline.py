"""Batch entry point: text items in, published clips or per-item failures out."""
from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from tts_pipeline.catalog import TtsCatalog
from tts_pipeline.codec import AUDIO_FORMATS, encode_clip
from tts_pipeline.content_hash import DEFAULT_DIRECTORY, content_hash
from tts_pipeline.errors import NoKeysAvailable, TtsPipelineError
from tts_pipeline.events import emit_stage_event, new_trace_id
from tts_pipeline.key_pool import KeyPoolManager, KeyStore
from tts_pipeline.provider import GeminiTtsProvider
from tts_pipeline.retry import SynthesisController
from tts_pipeline.scheduler import ItemOutcome, run_bounded
from tts_pipeline.settings import PipelineSettings
from tts_pipeline.storage import ObjectStore, StoragePublisher, StoredClip, SynthesisItem
from tts_pipeline.text_prep import PreparedScript, prepare_script

ERROR_CODE_INVALID_INPUT = "TTS_INVALID_INPUT"
ERROR_CODE_ITEM_FAILED = "TTS_ITEM_FAILED"


@dataclass(frozen=True)
class VoiceSelection:
    primary_voice: str
    secondary_voice: Optional[str] = None

    @property
    def storage_voice(self) -> str:
        """Voice token hashed into the object path; dialogue clips include both voices."""
        if self.secondary_voice:
            return f"{self.primary_voice}+{self.secondary_voice}"
        return self.primary_voice


@dataclass(frozen=True)
class ItemFailure:
    item_key: str
    text: str
    error_code: str
    message: str
    status: Optional[int] = None


@dataclass(frozen=True)
class BatchRequest:
    items: Sequence[SynthesisItem]
    voice: Optional[str] = None
    secondary_voice: Optional[str] = None
    accent: Optional[str] = None
    directory: str = DEFAULT_DIRECTORY
    audio_format: str = "wav"
    mulaw_sample_rate: Optional[int] = None
    monologue: bool = False
    parallelism: Optional[int] = None
    api_key: Optional[str] = None


@dataclass
class BatchResult:
    clips: list[StoredClip] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    requested: int = 0
    cancelled: int = 0

    @property
    def succeeded(self) -> int:
        return len(self.clips)

    @property
    def failed(self) -> int:
        return len(self.failures)


def resolve_voices(catalog: TtsCatalog, request: BatchRequest, script: PreparedScript) -> VoiceSelection:
    primary = catalog.resolve_voice(request.voice)
    if not script.is_dialogue:
        return VoiceSelection(primary_voice=primary)
    secondary = str(request.secondary_voice or "").strip()
    if not secondary or secondary == primary:
        # Seeded by content so a re-run of the same dialogue gets the same pair.
        seed = content_hash(script.text, primary)
        secondary = catalog.pick_secondary_voice(primary, accent=request.accent, rng=random.Random(seed))
    if secondary == primary:
        return VoiceSelection(primary_voice=primary)
    return VoiceSelection(primary_voice=primary, secondary_voice=secondary)


def _failure_from_outcome(outcome: ItemOutcome[SynthesisItem, StoredClip]) -> ItemFailure:
    item = outcome.item
    exc = outcome.error
    if isinstance(exc, TtsPipelineError):
        return ItemFailure(
            item_key=item.item_key,
            text=item.text,
            error_code=exc.error_code,
            message=exc.summary,
            status=getattr(exc, "status", None),
        )
    if isinstance(exc, ValueError):
        return ItemFailure(item_key=item.item_key, text=item.text, error_code=ERROR_CODE_INVALID_INPUT, message=str(exc))
    return ItemFailure(
        item_key=item.item_key,
        text=item.text,
        error_code=ERROR_CODE_ITEM_FAILED,
        message=(str(exc).strip() or type(exc).__name__)[:220],
    )


def synthesize_batch(
    request: BatchRequest,
    *,
    catalog: TtsCatalog,
    key_store: KeyStore,
    provider: GeminiTtsProvider,
    object_store: Optional[ObjectStore],
    settings: Optional[PipelineSettings] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    trace_id: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    config = settings or PipelineSettings()
    trace = trace_id or new_trace_id()
    items = list(request.items)
    audio_format = str(request.audio_format or "wav").strip().lower()
    if audio_format not in AUDIO_FORMATS:
        raise ValueError(f"Unsupported audio format: {request.audio_format}")
    if not items:
        return BatchResult()

    manager = KeyPoolManager(key_store, provider=config.key_provider, trace_id=trace)
    pool = manager.load(request.api_key)
    if pool.is_empty():
        raise NoKeysAvailable(detail={"trace_id": trace})

    controller = SynthesisController(
        pool,
        manager,
        provider,
        policy=config.retry,
        timeout_ms=config.request_timeout_ms,
        multi_speaker_timeout_ms=config.multi_speaker_timeout_ms,
        sleep=sleep,
        rng=rng,
        trace_id=trace,
    )
    publisher = StoragePublisher(object_store, trace_id=trace)

    def run_item(item: SynthesisItem) -> StoredClip:
        script = prepare_script(item.text, monologue=request.monologue)
        voices = resolve_voices(catalog, request, script)
        clip = controller.synthesize(
            script.text,
            voices.primary_voice,
            secondary_voice=voices.secondary_voice,
            item_key=item.item_key,
        )
        encoded = encode_clip(
            clip.raw_pcm,
            clip.sample_rate,
            audio_format,
            mulaw_sample_rate=request.mulaw_sample_rate,
        )
        return publisher.publish(item, encoded, voices.storage_voice, request.directory)

    parallelism = config.batch_max_parallel
    if request.parallelism:
        parallelism = min(parallelism, max(1, int(request.parallelism)))
    emit_stage_event(
        trace,
        "batch",
        "start",
        {"requested": len(items), "parallelism": parallelism, "keyPoolSize": len(pool), "format": audio_format},
    )

    outcomes = run_bounded(items, run_item, parallelism, cancel_event=cancel_event)

    result = BatchResult(requested=len(items))
    for outcome in outcomes:
        if outcome.ok and outcome.value is not None:
            result.clips.append(outcome.value)
            continue
        if outcome.cancelled:
            result.cancelled += 1
        failure = _failure_from_outcome(outcome)
        result.failures.append(failure)
        emit_stage_event(
            trace,
            "batch_item",
            "error",
            {"itemKey": failure.item_key, "errorCode": failure.error_code, "error": failure.message},
        )
    emit_stage_event(
        trace,
        "batch",
        "done",
        {
            "requested": result.requested,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "cancelled": result.cancelled,
        },
    )
    return result
