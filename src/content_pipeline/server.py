"""FastAPI service exposing the content pipeline, validator, tagger, and monitor."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .models import BatchPayload, ContentTarget, Template
from .monitor import PipelineMonitor
from .orchestrator import ContentPipelineOrchestrator
from .store import InMemoryRecordStore, JsonlRecordStore

logger = logging.getLogger(__name__)

_lock = Lock()
_orchestrator: ContentPipelineOrchestrator | None = None
_monitor: PipelineMonitor | None = None


def records_root() -> Path | None:
    """Directory of JSONL record files (CONTENT_RECORDS_DIR); in-memory when unset."""
    env_path = os.getenv("CONTENT_RECORDS_DIR")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return None


def get_orchestrator() -> ContentPipelineOrchestrator:
    global _orchestrator
    with _lock:
        if _orchestrator is None:
            root = records_root()
            store = JsonlRecordStore(root) if root else InMemoryRecordStore()
            _orchestrator = ContentPipelineOrchestrator(store)
        return _orchestrator


def get_monitor(
    orchestrator: ContentPipelineOrchestrator = Depends(get_orchestrator),
) -> PipelineMonitor:
    global _monitor
    with _lock:
        if _monitor is None:
            _monitor = PipelineMonitor(
                orchestrator.events,
                probes=orchestrator.component_probes(),
                settings=orchestrator.settings,
            )
            orchestrator.attach_monitor(_monitor)
        return _monitor


@asynccontextmanager
async def lifespan(app: FastAPI):
    enabled = os.getenv("MONITOR_ENABLED", "true").lower() == "true"
    monitor = get_monitor(get_orchestrator()) if enabled else None
    if monitor is not None:
        monitor.start()
    try:
        yield
    finally:
        if monitor is not None:
            monitor.stop()


app = FastAPI(title="Content Pipeline", lifespan=lifespan)


def _add_cors(app: FastAPI) -> None:
    """Allow browser clients to call the API during local development."""
    allow_all = os.getenv("CORS_ALLOW_ALL", "true").lower() == "true"
    origins_env = os.getenv("CORS_ALLOW_ORIGINS", "")
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]
    allow_credentials = (
        os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    )
    if allow_all or not origins:
        origins = ["*"]
    if origins == ["*"] and allow_credentials:
        # Starlette/FastAPI disallow wildcard origins when credentials are enabled.
        allow_credentials = False
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )


_add_cors(app)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, LookupError):
        code = status.HTTP_404_NOT_FOUND
    else:
        logger.exception("Request failed")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/pipeline/run")
def run_pipeline(
    payload: Dict[str, Any],
    orchestrator: ContentPipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Run one request; a validation-failed run returns 200 with ``success: false``."""
    try:
        run = orchestrator.execute_pipeline(payload)
    except Exception as exc:
        raise _http_error(exc) from exc
    code = status.HTTP_201_CREATED if run.success else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=jsonable_encoder(run))


@app.post("/pipeline/batch")
def run_batch(
    payload: BatchPayload,
    orchestrator: ContentPipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Malformed bodies (``requests`` not a list, ``max_workers`` not a positive int) get 422."""
    try:
        batch = orchestrator.execute_batch_pipeline(
            payload.requests, max_workers=payload.max_workers
        )
    except Exception as exc:
        raise _http_error(exc) from exc

    body = {
        "batch_id": batch.batch_id,
        "total_requests": batch.total_requests,
        "successful_requests": batch.successful_requests,
        "failed_requests": batch.failed_requests,
        "total_time_ms": batch.total_time_ms,
        "average_time_per_request": batch.average_time_per_request,
        "items": [
            {
                "index": item.index,
                "success": item.run is not None and item.run.success,
                "error": item.error,
                "duration_ms": item.duration_ms,
                "run": item.run,
            }
            for item in batch.items
        ],
    }
    return JSONResponse(content=jsonable_encoder(body))


@app.post("/validate")
def validate(
    payload: Dict[str, Any],
    strict: bool = False,
    orchestrator: ContentPipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Score a template (payload with ``template_type``) or a content mapping."""
    try:
        if "template_type" in payload:
            target: Any = Template.model_validate(payload)
        else:
            target = ContentTarget.model_validate(payload).model_dump()
        result = orchestrator.validator.validate(target, strict=strict)
    except Exception as exc:
        raise _http_error(exc) from exc
    body = jsonable_encoder(result)
    body["reason"] = result.reason
    return JSONResponse(content=body)


@app.post("/tags")
def detect_tags(
    payload: Dict[str, Any],
    orchestrator: ContentPipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    text = payload.get("text")
    if not isinstance(text, str):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="text is required.")
    result = orchestrator.classifier.detect_tags(
        text,
        use_ai=bool(payload.get("use_ai", True)),
        confidence_threshold=payload.get("threshold"),
    )
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/monitor/health")
def monitor_health(monitor: PipelineMonitor = Depends(get_monitor)) -> JSONResponse:
    cycle = monitor.run_cycle()
    body = {
        "monitor": monitor.status,
        "health": cycle.health,
        "metrics": cycle.metrics,
        "alerts": cycle.alerts,
    }
    return JSONResponse(content=jsonable_encoder(body))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "content_pipeline.server:app",
        host=os.getenv("CONTENT_HOST", "0.0.0.0"),
        port=int(os.getenv("CONTENT_PORT", "8000")),
        reload=os.getenv("CONTENT_RELOAD", "false").lower() == "true",
    )
