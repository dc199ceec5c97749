"""Per-item retry with exponential backoff and key failover.

Each item walks the batch pool one distinct key at a time. Transient results
are retried on the same key with backoff; a rejected credential is quarantined
and the next key is tried. When every key has been tried the outcome mix picks
the batch-level error.
"""
from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tts_pipeline.errors import (
    AllKeysForbidden,
    AllKeysRateLimited,
    BatchAbort,
    ItemRejectedError,
    NoKeysAvailable,
    UpstreamUnknownFailure,
    summarize_failures,
)
from tts_pipeline.events import emit_stage_event
from tts_pipeline.key_pool import KeyPool, KeyPoolManager
from tts_pipeline.provider import AttemptFatal, AttemptSuccess, GeminiTtsProvider, is_rate_limit_status

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 8000
DEFAULT_JITTER_MS = 500


@dataclass(frozen=True)
class EncodedClip:
    raw_pcm: bytes
    sample_rate: int


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter_ms: int = DEFAULT_JITTER_MS

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff in seconds before retry number ``attempt + 1`` on the same key."""
        source = rng or random
        jitter = source.uniform(0, max(0, self.jitter_ms)) if self.jitter_ms > 0 else 0.0
        delay_ms = min(self.base_delay_ms * (2 ** max(0, attempt)) + jitter, self.max_delay_ms)
        return max(0.0, delay_ms) / 1000.0


class SynthesisController:
    def __init__(
        self,
        pool: KeyPool,
        manager: KeyPoolManager,
        provider: GeminiTtsProvider,
        *,
        policy: Optional[RetryPolicy] = None,
        timeout_ms: int = 45000,
        multi_speaker_timeout_ms: int = 90000,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        trace_id: str = "",
    ) -> None:
        self.pool = pool
        self.manager = manager
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.timeout_ms = int(timeout_ms)
        self.multi_speaker_timeout_ms = int(multi_speaker_timeout_ms)
        self._sleep = sleep
        self._rng = rng
        self.trace_id = trace_id

    def synthesize(
        self,
        text: str,
        voice: str,
        *,
        secondary_voice: Optional[str] = None,
        item_key: str = "",
    ) -> EncodedClip:
        timeout_ms = self.multi_speaker_timeout_ms if secondary_voice else self.timeout_ms
        tried: set[str] = set()
        saw_rate = False
        saw_auth = False
        saw_other = False
        fragments: list[str] = []
        attempts_used = 0

        while True:
            record = self.pool.next(exclude=tried)
            if record is None:
                break
            tried.add(record.id)

            for attempt in range(self.policy.max_retries + 1):
                attempts_used += 1
                emit_stage_event(
                    self.trace_id,
                    "synthesis",
                    "attempt",
                    {
                        "itemKey": item_key,
                        "retryAttempt": attempt,
                        "keyFingerprint": record.fingerprint,
                        "keyPoolSize": len(self.pool),
                    },
                )
                result = self.provider.synthesize(
                    record.secret_value,
                    text,
                    voice,
                    timeout_ms,
                    secondary_voice=secondary_voice,
                )

                if isinstance(result, AttemptSuccess):
                    self.manager.report_success(record)
                    emit_stage_event(
                        self.trace_id,
                        "synthesis",
                        "done",
                        {"itemKey": item_key, "keyFingerprint": record.fingerprint, "attemptsUsed": attempts_used},
                    )
                    return EncodedClip(raw_pcm=result.pcm, sample_rate=result.sample_rate)

                fragments.append(result.reason)
                if isinstance(result, AttemptFatal):
                    if not result.key_specific:
                        emit_stage_event(
                            self.trace_id,
                            "synthesis",
                            "rejected",
                            {"itemKey": item_key, "status": result.status, "error": result.reason},
                        )
                        raise ItemRejectedError(result.reason, status=result.status)
                    saw_auth = True
                    self.pool.quarantine(record)
                    self.manager.report_failure(record, fatal=True)
                    emit_stage_event(
                        self.trace_id,
                        "synthesis",
                        "key_rejected",
                        {"itemKey": item_key, "status": result.status, "keyFingerprint": record.fingerprint},
                    )
                    break

                if is_rate_limit_status(result.status):
                    saw_rate = True
                else:
                    saw_other = True
                if attempt < self.policy.max_retries:
                    delay = self.policy.delay_for(attempt, self._rng)
                    emit_stage_event(
                        self.trace_id,
                        "synthesis",
                        "backoff",
                        {
                            "itemKey": item_key,
                            "status": result.status,
                            "retryAttempt": attempt + 1,
                            "waitMs": int(delay * 1000),
                            "keyFingerprint": record.fingerprint,
                        },
                    )
                    self._sleep(delay)
            else:
                self.manager.report_failure(record, fatal=False)
                emit_stage_event(
                    self.trace_id,
                    "synthesis",
                    "key_exhausted",
                    {"itemKey": item_key, "keyFingerprint": record.fingerprint},
                )

        raise self._terminal_error(
            saw_rate=saw_rate,
            saw_auth=saw_auth,
            saw_other=saw_other,
            fragments=fragments,
            detail={
                "attemptsUsed": attempts_used,
                "keysTried": len(tried),
                "keyPoolSize": len(self.pool),
                "trace_id": self.trace_id,
            },
        )

    def _terminal_error(
        self,
        *,
        saw_rate: bool,
        saw_auth: bool,
        saw_other: bool,
        fragments: list[str],
        detail: dict[str, object],
    ) -> BatchAbort:
        if not fragments:
            # Nothing was attempted: either no keys at all, or every key was
            # already quarantined by another item of the same batch.
            if self.pool.is_empty():
                return NoKeysAvailable(detail=detail)
            return AllKeysForbidden(detail=detail)
        summary = summarize_failures(fragments, "Gemini TTS synthesis failed after exhausting keys.")
        if saw_rate and not saw_auth and not saw_other:
            return AllKeysRateLimited(summary=summary, detail=detail)
        if saw_auth and not saw_rate and not saw_other:
            return AllKeysForbidden(summary=summary, detail=detail)
        return UpstreamUnknownFailure(summary=summary, detail=detail)
