import logging
import math
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from commercepix import db, ledger, rate_limit, storage, worker
from commercepix.config import settings
from commercepix.errors import (
    AdmissionError,
    Forbidden,
    InsufficientCredits,
    InvalidInput,
    NotFound,
    RateLimitExceeded,
    Unauthenticated,
)
from commercepix.schemas import (
    AdminGrantRequest,
    AssetResponse,
    CreditReason,
    CreditSummaryResponse,
    GenerateRequest,
    JobResponse,
    JobStatus,
    Mode,
    RateLimitResult,
    RefType,
    WindowKind,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CommercePix Generation API", version=settings.app_version)
db.init_db()
Path(settings.storage_dir).mkdir(parents=True, exist_ok=True)

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_IMAGE_TYPES = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}
_GRANT_REF_TYPES = {
    CreditReason.SUBSCRIPTION_RESET: RefType.SUBSCRIPTION,
    CreditReason.OVERAGE_PURCHASE: RefType.PURCHASE,
}


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


@app.exception_handler(AdmissionError)
async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope({}, status="error", error=exc.to_dict()),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidInput("Invalid request", {"errors": jsonable_encoder(exc.errors())})
    return JSONResponse(status_code=error.status_code, content=envelope({}, status="error", error=error.to_dict()))


def _require_segment(name: str, value: str) -> str:
    if not _SEGMENT.match(value):
        raise InvalidInput(f"{name} must be 1-64 characters of letters, digits, '-' or '_'", {name: value})
    return value


def _current_user(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthenticated("X-User-Id header is required")
    return _require_segment("user_id", x_user_id.strip())


CurrentUser = Annotated[str, Depends(_current_user)]


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _validate_mode(mode: str) -> Mode:
    try:
        return Mode(mode)
    except ValueError:
        valid = ", ".join(m.value for m in Mode)
        raise InvalidInput(f"Mode must be one of: {valid}", {"mode": mode}) from None


def _rate_limit_error(limits: RateLimitResult) -> RateLimitExceeded:
    window = limits.per_minute if limits.blocked_by == WindowKind.PER_MINUTE else limits.per_day
    reset_at = datetime.fromisoformat(window.reset_at)
    retry_after = max(1, math.ceil((reset_at - datetime.now(timezone.utc)).total_seconds()))
    details = {
        "window": limits.blocked_by.value,
        "limit": window.limit,
        "current": window.current,
        "remaining": window.remaining,
        "reset_at": window.reset_at,
    }
    headers = {
        "X-RateLimit-Limit": str(window.limit),
        "X-RateLimit-Remaining": str(window.remaining),
        "X-RateLimit-Reset": window.reset_at,
        "Retry-After": str(retry_after),
    }
    return RateLimitExceeded(window.message or "Rate limit exceeded", details, headers)


def _owned_asset(asset_id: str, user_id: str) -> dict:
    asset = db.get_asset(asset_id)
    if not asset:
        raise NotFound("Asset not found", {"asset_id": asset_id})
    if asset["user_id"] != user_id:
        raise Forbidden("You do not own this asset", {"asset_id": asset_id})
    return asset


@app.get("/health")
def health() -> dict:
    return envelope({"service": "commercepix"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "commercepix", "version": settings.app_version})


@app.post("/v1/assets")
async def upload_input_asset(
    user_id: CurrentUser,
    file: UploadFile = File(...),
    project_id: str = Form(...),
) -> dict:
    _require_segment("project_id", project_id)
    ext = _IMAGE_TYPES.get(file.content_type or "")
    if not ext:
        raise InvalidInput("Only PNG, JPEG or WebP images are supported", {"content_type": file.content_type})

    data = await file.read()
    if not data:
        raise InvalidInput("Uploaded file is empty")
    if len(data) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail="File too large")

    asset_id = str(uuid4())
    path = f"{user_id}/{project_id}/{asset_id}.{ext}"
    storage.get_storage().upload_bytes(settings.input_bucket, path, data, file.content_type)
    db.create_asset(
        asset_id=asset_id,
        user_id=user_id,
        project_id=project_id,
        kind="input",
        storage_bucket=settings.input_bucket,
        storage_path=path,
        mime_type=file.content_type,
    )
    return envelope(AssetResponse(**db.get_asset(asset_id)).model_dump(mode="json"))


@app.get("/v1/assets/{asset_id}/signed-url")
def get_asset_signed_url(asset_id: str, user_id: CurrentUser) -> dict:
    asset = _owned_asset(asset_id, user_id)
    url = storage.get_storage().signed_read_url(
        asset["storage_bucket"],
        asset["storage_path"],
        settings.signed_url_ttl_sec,
    )
    return envelope({"asset_id": asset_id, "signed_url": url, "expires_in": settings.signed_url_ttl_sec})


@app.get("/v1/storage/{bucket}/{path:path}")
def read_storage_object(
    bucket: str,
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
) -> Response:
    store = storage.get_storage()
    try:
        if not store.verify_signature(bucket, path, expires, signature):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")
        if not store.exists(bucket, path):
            raise HTTPException(status_code=404, detail="Object not found")
        data = store.read_bytes(bucket, path)
    except storage.StorageError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(content=data, media_type=store.content_type(path))


@app.post("/v1/generate")
def create_generation_job(
    payload: GenerateRequest,
    background_tasks: BackgroundTasks,
    user_id: CurrentUser,
) -> dict:
    mode = _validate_mode(payload.mode)

    limits = rate_limit.check_and_consume(user_id)
    if not limits.allowed:
        raise _rate_limit_error(limits)

    cost = settings.generation_cost_units
    if not ledger.has_sufficient_credits(user_id, cost):
        raise InsufficientCredits(
            "You do not have enough credits to generate an image. Please upgrade your plan.",
            {"balance": ledger.get_balance(user_id), "required": cost},
        )

    asset = _owned_asset(payload.input_asset_id, user_id)
    if asset["project_id"] != payload.project_id:
        raise InvalidInput(
            "Asset does not belong to the specified project",
            {"input_asset_id": payload.input_asset_id, "project_id": payload.project_id},
        )

    job_id = str(uuid4())
    db.create_job(
        job_id=job_id,
        user_id=user_id,
        project_id=payload.project_id,
        mode=mode.value,
        input_asset_id=payload.input_asset_id,
    )
    background_tasks.add_task(worker.process_job, job_id, payload.prompt_inputs())
    logger.info("job %s queued (mode=%s user=%s)", job_id, mode.value, user_id)

    return envelope(
        {
            "job_id": job_id,
            "status": JobStatus.QUEUED.value,
            "rate_limit": {
                "per_minute": limits.per_minute.model_dump(exclude={"message"}),
                "per_day": limits.per_day.model_dump(exclude={"message"}),
            },
        }
    )


@app.get("/v1/jobs/{job_id}")
def get_generation_job(job_id: str, user_id: CurrentUser) -> dict:
    job = db.get_job(job_id)
    if not job:
        raise NotFound("Job not found", {"job_id": job_id})
    if job["user_id"] != user_id:
        raise Forbidden("You do not own this job", {"job_id": job_id})

    output = db.get_output_asset_for_job(job_id) if job["status"] == JobStatus.SUCCEEDED.value else None
    response = JobResponse(**job, output_asset_id=output["id"] if output else None)
    return envelope(response.model_dump(mode="json"))


@app.get("/v1/projects/{project_id}/outputs")
def list_project_outputs(
    project_id: str,
    user_id: CurrentUser,
    limit: int = Query(50, ge=1, le=200),
) -> dict:
    outputs = db.list_project_outputs(user_id, project_id, limit=limit)
    return envelope(
        {
            "project_id": project_id,
            "outputs": [AssetResponse(**a).model_dump(mode="json") for a in outputs],
        }
    )


@app.get("/v1/credits")
def get_credits(user_id: CurrentUser) -> dict:
    summary = CreditSummaryResponse(**ledger.get_summary(user_id)).model_dump()
    return envelope({"balance": summary, "recent_ledger": ledger.list_entries(user_id, limit=20)})


@app.get("/v1/rate-limit/status")
def get_rate_limit_status(user_id: CurrentUser) -> dict:
    usage = rate_limit.get_usage(user_id)
    return envelope(
        {
            "per_minute": usage.per_minute.model_dump(),
            "per_day": usage.per_day.model_dump(),
            "limits": {
                "generations_per_minute": settings.rate_limit_per_minute,
                "generations_per_day": settings.rate_limit_per_day,
            },
        }
    )


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    if payload.reason == CreditReason.GENERATION_SPEND:
        raise HTTPException(status_code=400, detail="generation_spend entries cannot be granted")

    ledger_id = ledger.grant(
        payload.user_id,
        payload.credits,
        payload.reason,
        ref_type=_GRANT_REF_TYPES.get(payload.reason, RefType.ADMIN),
        ref_id=payload.ref_id,
        note=payload.note,
    )
    return envelope(
        {
            "user_id": payload.user_id,
            "ledger_id": ledger_id,
            "balance": ledger.get_balance(payload.user_id),
        }
    )


@app.get("/v1/admin/jobs/stats")
def admin_job_stats(x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(db.get_daily_stats())
