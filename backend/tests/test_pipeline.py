from __future__ import annotations

import threading
from typing import Optional

import pytest

from tts_pipeline.catalog import load_tts_catalog
from tts_pipeline.codec import WAVE_FORMAT_MULAW, decode_wav_header, wav_payload
from tts_pipeline.content_hash import content_hash
from tts_pipeline.errors import AllKeysRateLimited, NoKeysAvailable
from tts_pipeline.key_store import InMemoryKeyStore
from tts_pipeline.pipeline import BatchRequest, synthesize_batch
from tts_pipeline.provider import AttemptFatal, AttemptResult, AttemptRetryable, AttemptSuccess
from tts_pipeline.retry import RetryPolicy
from tts_pipeline.settings import PipelineSettings
from tts_pipeline.storage import FirebaseStorageStore, SynthesisItem

PCM = b"\x10\x00\x20\x00\x30\x00\x40\x00"


def _make_key(seed: int) -> str:
    return f"AIza{seed:030d}"


class _DummyProvider:
    def __init__(self, result: Optional[AttemptResult] = None, by_text: Optional[dict[str, AttemptResult]] = None) -> None:
        self.result = result or AttemptSuccess(pcm=PCM, sample_rate=24000)
        self.by_text = by_text or {}
        self.calls: list[dict[str, object]] = []
        self._lock = threading.Lock()

    def synthesize(self, api_key: str, text: str, voice: str, timeout_ms: int, *, secondary_voice: Optional[str] = None) -> AttemptResult:
        with self._lock:
            self.calls.append(
                {"api_key": api_key, "text": text, "voice": voice, "secondary_voice": secondary_voice, "timeout_ms": timeout_ms}
            )
        return self.by_text.get(text, self.result)


class _MemoryObjectStore:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.objects.setdefault(path, (data, content_type))
        return f"https://cdn.example.test/{path}"


class _DummyBlob:
    def __init__(self, bucket: "_DummyBucket", path: str) -> None:
        self.bucket = bucket
        self.path = path
        self.public_url = f"https://storage.example.test/{path}"

    def exists(self, timeout: float = 0) -> bool:
        return self.path in self.bucket.objects

    def upload_from_string(self, data: bytes, content_type: str = "", timeout: float = 0) -> None:
        self.bucket.objects[self.path] = data

    def make_public(self, timeout: float = 0) -> None:
        pass


class _DummyBucket:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    def blob(self, path: str) -> _DummyBlob:
        return _DummyBlob(self, path)


def _settings(**overrides: object) -> PipelineSettings:
    values: dict[str, object] = {"retry": RetryPolicy(max_retries=1, base_delay_ms=0, max_delay_ms=0, jitter_ms=0)}
    values.update(overrides)
    return PipelineSettings(**values)


def _run(request: BatchRequest, provider: _DummyProvider, store=None, object_store=None, **kwargs):
    return synthesize_batch(
        request,
        catalog=load_tts_catalog(),
        key_store=store if store is not None else InMemoryKeyStore.from_keys([_make_key(1), _make_key(2)]),
        provider=provider,
        object_store=object_store,
        settings=kwargs.pop("settings", _settings()),
        sleep=lambda _seconds: None,
        **kwargs,
    )


def test_single_item_is_synthesized_encoded_and_published() -> None:
    provider = _DummyProvider()
    objects = _MemoryObjectStore()

    result = _run(BatchRequest(items=[SynthesisItem("q1", "Hello world")]), provider, object_store=objects)

    assert result.requested == 1
    assert result.succeeded == 1
    assert result.failed == 0
    clip = result.clips[0]
    expected_path = f"tts/{content_hash('Hello world', 'Kore')}.wav"
    assert clip.item_key == "q1"
    assert clip.text == "Hello world"
    assert clip.sample_rate == 24000
    assert clip.url == f"https://cdn.example.test/{expected_path}"
    data, content_type = objects.objects[expected_path]
    assert content_type == "audio/wav"
    assert wav_payload(data) == PCM
    assert provider.calls[0]["voice"] == "Kore"
    assert provider.calls[0]["secondary_voice"] is None


def test_same_text_and_voice_share_one_object() -> None:
    objects = _MemoryObjectStore()
    request = BatchRequest(items=[SynthesisItem("a", "Repeat me"), SynthesisItem("b", "Repeat me")], voice="Puck")

    result = _run(request, _DummyProvider(), object_store=objects)

    assert result.succeeded == 2
    assert len(objects.objects) == 1
    assert result.clips[0].url == result.clips[1].url


def test_mulaw_output_uses_requested_rate() -> None:
    request = BatchRequest(items=[SynthesisItem("q1", "Hello world")], audio_format="mulaw", mulaw_sample_rate=8000)

    result = _run(request, _DummyProvider())

    clip = result.clips[0]
    assert clip.url is None
    assert clip.sample_rate == 8000
    assert decode_wav_header(clip.inline_audio).audio_format == WAVE_FORMAT_MULAW


def test_dialogue_items_get_a_second_voice() -> None:
    provider = _DummyProvider()
    request = BatchRequest(items=[SynthesisItem("d1", "Speaker1: Hello. Speaker2: Hi there.")], voice="Kore")

    result = _run(request, provider, settings=_settings(multi_speaker_timeout_ms=90000))

    assert result.succeeded == 1
    call = provider.calls[0]
    assert call["voice"] == "Kore"
    assert call["secondary_voice"] == "Aoede"
    assert call["timeout_ms"] == 90000
    assert call["text"].splitlines() == ["Speaker1: Hello.", "Speaker2: Hi there."]


def test_item_failures_do_not_abort_the_batch() -> None:
    provider = _DummyProvider(by_text={"Rejected text": AttemptFatal(400, "invalid argument", False)})
    request = BatchRequest(
        items=[
            SynthesisItem("ok", "Fine text"),
            SynthesisItem("empty", "   "),
            SynthesisItem("rejected", "Rejected text"),
        ]
    )

    result = _run(request, provider)

    assert [clip.item_key for clip in result.clips] == ["ok"]
    failures = {failure.item_key: failure for failure in result.failures}
    assert failures["empty"].error_code == "TTS_INVALID_INPUT"
    assert failures["rejected"].error_code == "TTS_ITEM_REJECTED"
    assert failures["rejected"].status == 400
    assert result.succeeded + result.failed == result.requested


def test_empty_pool_raises_before_any_provider_call() -> None:
    provider = _DummyProvider()
    with pytest.raises(NoKeysAvailable):
        _run(BatchRequest(items=[SynthesisItem("q1", "Hello")]), provider, store=InMemoryKeyStore())
    assert provider.calls == []


def test_request_key_is_used_when_store_is_empty() -> None:
    provider = _DummyProvider()
    result = _run(
        BatchRequest(items=[SynthesisItem("q1", "Hello")], api_key=_make_key(5)),
        provider,
        store=InMemoryKeyStore(),
    )
    assert result.succeeded == 1
    assert provider.calls[0]["api_key"] == _make_key(5)


def test_pool_exhaustion_aborts_the_batch() -> None:
    provider = _DummyProvider(result=AttemptRetryable(429, "quota exceeded"))
    request = BatchRequest(items=[SynthesisItem(f"q{index}", f"Item {index}") for index in range(5)], parallelism=1)

    with pytest.raises(AllKeysRateLimited):
        _run(request, provider)

    # One item walked both keys with one retry each; nothing else started.
    assert len(provider.calls) == 4


def test_cancelled_batch_reports_items_as_cancelled() -> None:
    cancel = threading.Event()
    cancel.set()
    result = _run(BatchRequest(items=[SynthesisItem("q1", "Hello"), SynthesisItem("q2", "World")]), _DummyProvider(), cancel_event=cancel)

    assert result.succeeded == 0
    assert result.cancelled == 2
    assert {failure.error_code for failure in result.failures} == {"TTS_BATCH_CANCELLED"}


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        _run(BatchRequest(items=[SynthesisItem("q1", "Hello")], audio_format="flac"), _DummyProvider())


def test_single_key_with_failing_storage_returns_inline_clip() -> None:
    class _FailingObjectStore:
        def upload(self, path: str, data: bytes, content_type: str) -> str:
            raise TimeoutError("upload timed out")

    result = _run(
        BatchRequest(items=[SynthesisItem("q1", "Hello world")]),
        _DummyProvider(),
        store=InMemoryKeyStore.from_keys([_make_key(1)]),
        object_store=_FailingObjectStore(),
    )

    assert result.failed == 0
    clip = result.clips[0]
    assert (clip.item_key, clip.sample_rate, clip.url) == ("q1", 24000, None)
    assert wav_payload(clip.inline_audio) == PCM
    assert clip.path == f"tts/{content_hash('Hello world', 'Kore')}.wav"


def test_wav_and_mulaw_of_same_text_do_not_share_an_object() -> None:
    bucket = _DummyBucket()
    objects = FirebaseStorageStore(bucket)
    item = SynthesisItem("q1", "Hello world")
    digest = content_hash("Hello world", "Kore")

    wav = _run(BatchRequest(items=[item]), _DummyProvider(), object_store=objects).clips[0]
    mulaw = _run(
        BatchRequest(items=[item], audio_format="mulaw", mulaw_sample_rate=8000),
        _DummyProvider(),
        object_store=objects,
    ).clips[0]

    assert wav.path == f"tts/{digest}.wav"
    assert mulaw.path == f"tts/{digest}.mulaw8000.wav"
    assert wav.url != mulaw.url
    header = decode_wav_header(bucket.objects[mulaw.path])
    assert header.audio_format == WAVE_FORMAT_MULAW
    assert header.sample_rate == 8000
    assert decode_wav_header(bucket.objects[wav.path]).sample_rate == 24000


def test_dialogue_object_path_depends_on_both_voices() -> None:
    text = "Speaker1: Hello. Speaker2: Hi there."
    objects = _MemoryObjectStore()

    with_aoede = _run(
        BatchRequest(items=[SynthesisItem("d1", text)], voice="Kore", secondary_voice="Aoede"),
        _DummyProvider(),
        object_store=objects,
    ).clips[0]
    with_puck = _run(
        BatchRequest(items=[SynthesisItem("d1", text)], voice="Kore", secondary_voice="Puck"),
        _DummyProvider(),
        object_store=objects,
    ).clips[0]

    assert with_aoede.path != with_puck.path
    assert len(objects.objects) == 2
    assert with_aoede.path == f"tts/{content_hash(text, 'Kore+Aoede')}.wav"


def test_monologue_object_path_hashes_text_and_voice_only() -> None:
    text = "Speaker1: Hello. Speaker2: Hi there."
    provider = _DummyProvider()

    clip = _run(BatchRequest(items=[SynthesisItem("m1", text)], voice="Puck", monologue=True), provider).clips[0]

    assert provider.calls[0]["secondary_voice"] is None
    assert clip.path == f"tts/{content_hash(text, 'Puck')}.wav"


def test_accent_steers_the_second_dialogue_voice() -> None:
    text = "Speaker1: Hello. Speaker2: Hi there."

    us_provider = _DummyProvider()
    _run(BatchRequest(items=[SynthesisItem("d1", text)], voice="Kore", accent="US"), us_provider)
    default_provider = _DummyProvider()
    _run(BatchRequest(items=[SynthesisItem("d1", text)], voice="Kore"), default_provider)

    assert us_provider.calls[0]["secondary_voice"] in {"Charon", "Fenrir"}
    assert default_provider.calls[0]["secondary_voice"] == "Aoede"


def test_batch_runs_items_concurrently_up_to_requested_parallelism() -> None:
    class _GatedProvider(_DummyProvider):
        def __init__(self) -> None:
            super().__init__()
            self.saturated = threading.Event()
            self.in_flight = 0
            self.peak = 0

        def synthesize(self, api_key: str, text: str, voice: str, timeout_ms: int, *, secondary_voice: Optional[str] = None) -> AttemptResult:
            with self._lock:
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                if self.in_flight == 3:
                    self.saturated.set()
            self.saturated.wait(timeout=2.0)
            result = super().synthesize(api_key, text, voice, timeout_ms, secondary_voice=secondary_voice)
            with self._lock:
                self.in_flight -= 1
            return result

    provider = _GatedProvider()
    request = BatchRequest(items=[SynthesisItem(f"q{index}", f"Item {index}") for index in range(10)], parallelism=3)

    result = _run(request, provider, settings=_settings(batch_max_parallel=4))

    assert provider.peak == 3
    assert result.succeeded == 10
    assert [clip.item_key for clip in result.clips] == [f"q{index}" for index in range(10)]
