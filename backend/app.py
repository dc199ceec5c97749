from __future__ import annotations

import base64
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import firebase_admin
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from firebase_admin import credentials as firebase_credentials
from firebase_admin import firestore as firebase_firestore
from firebase_admin import storage as firebase_storage
from pydantic import BaseModel, Field

BACKEND_ROOT = Path(__file__).resolve().parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from tts_pipeline.env_loader import load_service_env_files

load_service_env_files(Path(__file__))

from tts_pipeline.catalog import TtsCatalog, load_tts_catalog
from tts_pipeline.codec import AUDIO_FORMATS
from tts_pipeline.content_hash import DEFAULT_DIRECTORY
from tts_pipeline.errors import (
    AllKeysForbidden,
    AllKeysRateLimited,
    BatchAbort,
    NoKeysAvailable,
    UpstreamUnknownFailure,
)
from tts_pipeline.events import ENGINE_NAME, emit_stage_event, normalize_trace_id
from tts_pipeline.key_pool import KeyPoolManager, KeyStore
from tts_pipeline.key_store import FirestoreKeyStore, InMemoryKeyStore
from tts_pipeline.pipeline import BatchRequest, BatchResult, synthesize_batch
from tts_pipeline.provider import GeminiTtsProvider
from tts_pipeline.settings import PipelineSettings
from tts_pipeline.storage import FirebaseStorageStore, ObjectStore, StoredClip, SynthesisItem

APP_NAME = ENGINE_NAME
BATCH_ENDPOINT = "/v1/tts/batch"
BATCH_ABORT_STATUS: Dict[type, int] = {
    NoKeysAvailable: 503,
    AllKeysRateLimited: 429,
    AllKeysForbidden: 502,
    UpstreamUnknownFailure: 502,
}

SETTINGS = PipelineSettings.from_env()
CATALOG: TtsCatalog = load_tts_catalog(SETTINGS.catalog_path)
PROVIDER = GeminiTtsProvider(CATALOG)

_FIREBASE_APP = None
_FIREBASE_INIT_ERROR: Optional[str] = None


def _init_firebase_app(settings: PipelineSettings) -> Any:
    global _FIREBASE_APP, _FIREBASE_INIT_ERROR
    if _FIREBASE_APP is not None:
        return _FIREBASE_APP
    options = {"storageBucket": settings.storage_bucket} if settings.storage_bucket else None
    if settings.service_account_json:
        cred = firebase_credentials.Certificate(json.loads(settings.service_account_json))
        _FIREBASE_APP = firebase_admin.initialize_app(cred, options)
    else:
        _FIREBASE_APP = firebase_admin.initialize_app(options=options)
    _FIREBASE_INIT_ERROR = None
    return _FIREBASE_APP


def _build_key_store(settings: PipelineSettings) -> KeyStore:
    global _FIREBASE_INIT_ERROR
    if settings.key_store == "firestore":
        try:
            return FirestoreKeyStore(firebase_firestore.client(_init_firebase_app(settings)))
        except Exception as exc:  # noqa: BLE001
            _FIREBASE_INIT_ERROR = str(exc)
            emit_stage_event("startup", "key_store", "init_failed", {"error": str(exc)[:200]})
            return InMemoryKeyStore()
    return InMemoryKeyStore.from_env_values(
        settings.gemini_api_keys,
        settings.gemini_api_key,
        provider=settings.key_provider,
    )


def _build_object_store(settings: PipelineSettings) -> Optional[ObjectStore]:
    global _FIREBASE_INIT_ERROR
    if not settings.storage_bucket:
        return None
    try:
        bucket = firebase_storage.bucket(settings.storage_bucket, app=_init_firebase_app(settings))
    except Exception as exc:  # noqa: BLE001
        _FIREBASE_INIT_ERROR = str(exc)
        emit_stage_event("startup", "storage", "init_failed", {"error": str(exc)[:200]})
        return None
    return FirebaseStorageStore(bucket, timeout_sec=settings.storage_timeout_sec)


KEY_STORE: KeyStore = _build_key_store(SETTINGS)
OBJECT_STORE: Optional[ObjectStore] = _build_object_store(SETTINGS)


class TtsBatchItem(BaseModel):
    itemKey: str = Field(min_length=1)
    text: str = Field(min_length=1)


class TtsBatchRequest(BaseModel):
    items: list[TtsBatchItem] = Field(min_length=1)
    voice: Optional[str] = None
    secondaryVoice: Optional[str] = None
    accent: Optional[str] = None
    directory: Optional[str] = None
    format: str = "wav"
    mulawSampleRate: Optional[int] = Field(default=None, gt=0)
    monologue: bool = False
    parallelism: Optional[int] = None
    apiKey: Optional[str] = None
    trace_id: Optional[str] = None


app = FastAPI(title=APP_NAME)
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def _clip_payload(clip: StoredClip) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "itemKey": clip.item_key,
        "text": clip.text,
        "sampleRate": clip.sample_rate,
        "contentType": clip.content_type,
        "path": clip.path,
    }
    if clip.url is not None:
        payload["url"] = clip.url
    else:
        payload["inlineAudioBase64"] = base64.b64encode(clip.inline_audio or b"").decode("ascii")
    return payload


def _batch_payload(result: BatchResult, trace_id: str) -> Dict[str, Any]:
    return {
        "ok": result.failed == 0,
        "engine": APP_NAME,
        "trace_id": trace_id,
        "clips": [_clip_payload(clip) for clip in result.clips],
        "failures": [
            {
                "itemKey": failure.item_key,
                "text": failure.text,
                "errorCode": failure.error_code,
                "error": failure.message,
                "status": failure.status,
            }
            for failure in result.failures
        ],
        "summary": {
            "requested": result.requested,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "cancelled": result.cancelled,
        },
    }


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse(
        {
            "ok": True,
            "engine": APP_NAME,
            "catalogVersion": CATALOG.version,
            "model": CATALOG.model_for(False).model_id,
            "keyStore": SETTINGS.key_store,
            "storageConfigured": OBJECT_STORE is not None,
            "firebaseError": _FIREBASE_INIT_ERROR,
        }
    )


@app.get("/v1/capabilities")
def capabilities() -> JSONResponse:
    return JSONResponse(
        {
            "engine": APP_NAME,
            "catalogVersion": CATALOG.version,
            "models": [
                {
                    "id": model.model_id,
                    "supportsMultiSpeaker": model.supports_multi_speaker,
                    "sampleRate": model.sample_rate,
                }
                for model in CATALOG.models
            ],
            "voices": [
                {"name": voice.name, "gender": voice.gender, "accents": sorted(voice.accents)}
                for voice in CATALOG.voices.values()
            ],
            "defaultVoice": CATALOG.default_voice,
            "formats": sorted(AUDIO_FORMATS),
            "supportsMultiSpeaker": any(model.supports_multi_speaker for model in CATALOG.models),
            "batchEndpoint": BATCH_ENDPOINT,
            "batchMaxItems": SETTINGS.batch_max_items,
            "batchMaxParallelism": SETTINGS.batch_max_parallel,
        }
    )


@app.get("/v1/admin/api-pool")
def admin_api_pool() -> JSONResponse:
    pool = KeyPoolManager(KEY_STORE, provider=SETTINGS.key_provider, trace_id="admin").load()
    return JSONResponse(
        {
            "ok": True,
            "provider": SETTINGS.key_provider,
            "keyStore": SETTINGS.key_store,
            "keyPoolSize": len(pool),
            "keys": pool.snapshot(),
        }
    )


@app.post(BATCH_ENDPOINT)
def tts_batch(payload: TtsBatchRequest) -> JSONResponse:
    items = list(payload.items)
    if len(items) > SETTINGS.batch_max_items:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "batch_limit_exceeded",
                "maxItems": SETTINGS.batch_max_items,
                "actualItems": len(items),
            },
        )
    if payload.parallelism is not None and payload.parallelism < 1:
        raise HTTPException(status_code=400, detail="parallelism must be >= 1.")
    audio_format = str(payload.format or "wav").strip().lower()
    if audio_format not in AUDIO_FORMATS:
        raise HTTPException(
            status_code=400,
            detail={"error": "unsupported_format", "format": payload.format, "supported": sorted(AUDIO_FORMATS)},
        )

    trace_id = normalize_trace_id(payload.trace_id)
    request = BatchRequest(
        items=[SynthesisItem(item_key=item.itemKey, text=item.text) for item in items],
        voice=payload.voice,
        secondary_voice=payload.secondaryVoice,
        accent=payload.accent,
        directory=payload.directory or DEFAULT_DIRECTORY,
        audio_format=audio_format,
        mulaw_sample_rate=payload.mulawSampleRate,
        monologue=payload.monologue,
        parallelism=payload.parallelism,
        api_key=payload.apiKey,
    )
    try:
        result = synthesize_batch(
            request,
            catalog=CATALOG,
            key_store=KEY_STORE,
            provider=PROVIDER,
            object_store=OBJECT_STORE,
            settings=SETTINGS,
            trace_id=trace_id,
        )
    except BatchAbort as exc:
        status_code = BATCH_ABORT_STATUS.get(type(exc), 502)
        emit_stage_event(trace_id, "batch", "aborted", {"statusCode": status_code, "errorCode": exc.error_code})
        raise HTTPException(status_code=status_code, detail={**exc.to_payload(), "trace_id": trace_id}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(_batch_payload(result, trace_id))
