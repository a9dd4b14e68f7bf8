import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from commercepix import db, ledger, prompts, provider, storage
from commercepix.config import settings
from commercepix.provider import ProviderError, ProviderTimeoutError
from commercepix.schemas import JobStatus, PromptInputs

logger = logging.getLogger(__name__)


class StepFailed(Exception):
    def __init__(self, step: str, code: str, detail: str) -> None:
        self.step = step
        self.code = code
        self.detail = detail
        super().__init__(f"{step} failed: {detail}")


class CreditSpendError(RuntimeError):
    pass


def _failure_code(exc: Exception, default: str) -> str:
    if isinstance(exc, ProviderTimeoutError):
        return "PROVIDER_TIMEOUT"
    if isinstance(exc, ProviderError):
        return "PROVIDER_ERROR"
    return default


@contextmanager
def _step(name: str, code: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        raise StepFailed(name, _failure_code(exc, code), str(exc) or exc.__class__.__name__) from exc


def _image_dimensions() -> tuple[int | None, int | None]:
    width, _, height = settings.image_size.partition("x")
    if width.isdigit() and height.isdigit():
        return int(width), int(height)
    return None, None


def _spend_and_complete(job: dict, cost_units: int) -> None:
    # One transaction: a spend is never committed unless the job also
    # becomes succeeded, and vice versa.
    with db.transaction() as conn:
        result = ledger.spend(job["user_id"], cost_units, job["id"], conn=conn)
        if not result.success:
            raise CreditSpendError(result.error)
        if not db.transition_job(job["id"], JobStatus.SUCCEEDED, cost_units=cost_units, conn=conn):
            raise CreditSpendError("job is no longer running")
    logger.info("spent %s credits for job %s (balance %s)", cost_units, job["id"], result.new_balance)


def _fail(job_id: str, message: str, code: str) -> None:
    if not db.transition_job(job_id, JobStatus.FAILED, error=message, failure_reason_code=code):
        logger.warning("job %s already terminal, failure not recorded: %s", job_id, message)


def process_job(job_id: str, inputs: PromptInputs | None = None) -> None:
    """Run the generation pipeline for a queued job.

    Runs detached from the request that created the job. The only outcome is
    the job row: succeeded with one ledger debit, or failed with an error
    naming the step that broke and no debit.
    """
    job = db.get_job(job_id)
    if not job:
        logger.warning("job %s not found", job_id)
        return
    if not db.transition_job(job_id, JobStatus.RUNNING):
        logger.warning("job %s is %s, not starting", job_id, job["status"])
        return

    started = time.monotonic()
    logger.info("job %s running (mode=%s user=%s)", job_id, job["mode"], job["user_id"])

    try:
        store = storage.get_storage()

        with _step("Prompt build", "PROMPT_ERROR"):
            built = prompts.build_prompt(job["mode"], inputs)

        with _step("Input fetch", "STORAGE_READ_ERROR"):
            input_asset = db.get_asset(job["input_asset_id"])
            if not input_asset:
                raise storage.StorageError(f"input asset {job['input_asset_id']} not found")
            url = store.signed_read_url(
                input_asset["storage_bucket"],
                input_asset["storage_path"],
                settings.signed_url_ttl_sec,
            )
            image_bytes = store.fetch(url, settings.storage_fetch_timeout_sec)

        with _step("Image generation", "PROVIDER_ERROR"):
            output_bytes = provider.get_provider().generate(
                built.instruction_text,
                image_bytes,
                input_asset["mime_type"],
            )

        output_asset_id = str(uuid4())
        output_path = f"{job['user_id']}/{job['project_id']}/{output_asset_id}.png"
        with _step("Output upload", "STORAGE_WRITE_ERROR"):
            store.upload_bytes(settings.output_bucket, output_path, output_bytes, "image/png")

        with _step("Output asset record", "ASSET_RECORD_ERROR"):
            width, height = _image_dimensions()
            db.create_asset(
                asset_id=output_asset_id,
                user_id=job["user_id"],
                project_id=job["project_id"],
                kind="output",
                storage_bucket=settings.output_bucket,
                storage_path=output_path,
                mime_type="image/png",
                mode=job["mode"],
                source_asset_id=job["input_asset_id"],
                job_id=job_id,
                prompt_version=built.audit.version,
                prompt_payload=built.audit.model_dump(mode="json"),
                width=width,
                height=height,
            )

        with _step("Credit spend", "CREDIT_SPEND_ERROR"):
            _spend_and_complete(job, settings.generation_cost_units)
    except StepFailed as exc:
        message = str(exc)
        if exc.code == "CREDIT_SPEND_ERROR":
            message = f"Image generated but credit spend failed: {exc.detail}"
        logger.exception("job %s failed at %s", job_id, exc.step)
        _fail(job_id, message, exc.code)
        return
    except Exception as exc:
        logger.exception("job %s failed unexpectedly", job_id)
        _fail(job_id, f"Unexpected error: {exc}", "UNKNOWN_ERROR")
        return

    logger.info(
        "job %s succeeded in %.1fs (output asset %s, %s credits)",
        job_id,
        time.monotonic() - started,
        output_asset_id,
        settings.generation_cost_units,
    )


def sweep_stale_jobs(max_age_sec: int | None = None, now: datetime | None = None) -> list[str]:
    """Fail jobs stuck in queued or running longer than ``max_age_sec``."""
    now = now or datetime.now(timezone.utc)
    max_age = settings.job_timeout_sec if max_age_sec is None else max_age_sec
    swept: list[str] = []
    for job in db.list_stale_jobs(now - timedelta(seconds=max_age)):
        message = f"Job timed out after {max_age}s in {job['status']}"
        if db.transition_job(job["id"], JobStatus.FAILED, error=message, failure_reason_code="JOB_TIMEOUT"):
            swept.append(job["id"])
            logger.warning("job %s swept: %s", job["id"], message)
    return swept
