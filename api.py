"""FastAPI service for trade CSV ingestion.

Thin HTTP layer over ``IngestionService``:
  POST /csv/validate                parse + detect, nothing persisted
  POST /csv/upload                  full import (may park for review)
  POST /csv/process-with-broker     re-propose a mapping once the broker is known
  POST /csv/finalize-mappings       approve / correct / reject an AI mapping
  GET  /import-batches/{batch_id}   batch status
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ingestion.errors import (
    BatchNotFound,
    BatchStateError,
    InvalidTransition,
    ValidationError,
)
from ingestion.models import ColumnMapping

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# ─── Startup env-var check ───────────────────────────────────────────────────
logger.info(
    "[STARTUP] Env check: SUPABASE_URL=%s, SUPABASE_SERVICE_KEY=%s, ANTHROPIC_API_KEY=%s",
    "set" if os.environ.get("SUPABASE_URL") else "missing",
    "set" if os.environ.get("SUPABASE_SERVICE_KEY") else "missing",
    "set" if os.environ.get("ANTHROPIC_API_KEY") else "missing",
)

app = FastAPI(
    title="Trade CSV Ingest",
    description="Broker CSV detection, mapping and import",
    version=API_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# ─── Helpers ─────────────────────────────────────────────────────────────────

_service = None


def _get_service():
    """Lazy-init the ingestion service (store/registry picked from env)."""
    global _service
    if _service is None:
        from ingestion.orchestrator import IngestionService
        _service = IngestionService()
    return _service


def _error(exc: Exception) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return JSONResponse({"error": str(exc), "defects": exc.defects}, status_code=400)
    if isinstance(exc, BatchNotFound):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, (BatchStateError, InvalidTransition)):
        return JSONResponse({"error": str(exc)}, status_code=409)
    logger.error("[API] Unexpected error: %s", exc, exc_info=True)
    return JSONResponse({"error": str(exc)}, status_code=500)


# ─── Request models ──────────────────────────────────────────────────────────


class ColumnMappingIn(BaseModel):
    source_column: str
    target_column: str
    confidence: float = 1.0
    priority: int = 0
    data_type: str = "string"
    transformer: Optional[str] = None

    def to_mapping(self) -> ColumnMapping:
        return ColumnMapping.from_dict(self.model_dump())


class ValidateRequest(BaseModel):
    file_content: str
    file_name: str = "upload.csv"


class UploadRequest(BaseModel):
    file_content: str
    file_name: str
    user_id: str
    account_tags: list[str] = Field(default_factory=list)
    user_mappings: Optional[list[ColumnMappingIn]] = None
    broker_name: Optional[str] = None


class ProcessWithBrokerRequest(BaseModel):
    import_batch_id: str
    user_id: str
    broker_name: str


class FinalizeMappingsRequest(BaseModel):
    import_batch_id: str
    user_id: str
    approved: bool
    corrections: Optional[dict[str, str]] = None
    report_error: bool = False


# ─── Endpoints ───────────────────────────────────────────────────────────────


@app.get("/health")
def health() -> dict[str, Any]:
    from storage.supabase_client import is_configured as supa_ok
    return {
        "status": "ok",
        "version": API_VERSION,
        "supabase_connected": supa_ok(),
        "ai_mapping_available": bool(os.environ.get("ANTHROPIC_API_KEY")),
    }


@app.post("/csv/validate")
def validate_csv(req: ValidateRequest) -> JSONResponse:
    result = _get_service().validate(req.file_content, req.file_name)
    return JSONResponse(result.to_dict())


@app.post("/csv/upload")
async def upload_csv(req: UploadRequest) -> JSONResponse:
    mappings = [m.to_mapping() for m in req.user_mappings] if req.user_mappings else None
    try:
        result = await _get_service().ingest(
            req.file_content,
            req.file_name,
            req.user_id,
            account_tags=req.account_tags,
            user_mappings=mappings,
            broker_name_hint=req.broker_name,
        )
    except Exception as e:
        return _error(e)
    logger.info(
        "[API] Upload %s → batch %s (success=%s, review=%s)",
        req.file_name, result.import_batch_id, result.success, result.requires_user_review,
    )
    return JSONResponse(result.to_dict())


@app.post("/csv/process-with-broker")
async def process_with_broker(req: ProcessWithBrokerRequest) -> JSONResponse:
    try:
        result = await _get_service().process_with_broker(
            req.import_batch_id, req.user_id, req.broker_name,
        )
    except Exception as e:
        return _error(e)
    return JSONResponse(result.to_dict())


@app.post("/csv/finalize-mappings")
def finalize_mappings(req: FinalizeMappingsRequest) -> JSONResponse:
    try:
        result = _get_service().finalize_mappings(
            req.import_batch_id,
            req.user_id,
            approved=req.approved,
            corrections=req.corrections,
            report_error=req.report_error,
        )
    except Exception as e:
        return _error(e)
    return JSONResponse(result.to_dict())


@app.get("/import-batches/{batch_id}")
def import_batch_status(batch_id: str, user_id: str) -> JSONResponse:
    try:
        return JSONResponse(_get_service().get_import_status(batch_id, user_id))
    except Exception as e:
        return _error(e)
