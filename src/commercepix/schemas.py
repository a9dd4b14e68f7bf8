from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Mode(str, Enum):
    MAIN_WHITE = "main_white"
    LIFESTYLE = "lifestyle"
    FEATURE_CALLOUT = "feature_callout"
    PACKAGING = "packaging"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CreditReason(str, Enum):
    SUBSCRIPTION_RESET = "subscription_reset"
    GENERATION_SPEND = "generation_spend"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    OVERAGE_PURCHASE = "overage_purchase"


class RefType(str, Enum):
    JOB = "job"
    SUBSCRIPTION = "subscription"
    ADMIN = "admin"
    PURCHASE = "purchase"


class WindowKind(str, Enum):
    PER_MINUTE = "per_minute"
    PER_DAY = "per_day"


class PromptInputs(BaseModel):
    product_category: str | None = None
    brand_tone: str | None = None
    product_description: str | None = None
    constraints: list[str] = Field(default_factory=list)


class PromptAudit(BaseModel):
    mode: Mode
    version: str
    template: str
    generated_at: str
    inputs: PromptInputs
    sanitized_inputs: PromptInputs | None = None
    constraints: list[str]
    overrides: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class WindowStatus(BaseModel):
    limit: int
    current: int
    remaining: int
    reset_at: str
    message: str | None = None


class RateLimitResult(BaseModel):
    allowed: bool
    per_minute: WindowStatus
    per_day: WindowStatus
    blocked_by: WindowKind | None = None


class GenerateRequest(BaseModel):
    project_id: str = Field(min_length=1)
    input_asset_id: str = Field(min_length=1)
    mode: str
    product_category: str | None = Field(default=None, max_length=100)
    brand_tone: str | None = Field(default=None, max_length=100)
    product_description: str | None = Field(default=None, max_length=500)
    constraints: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("constraints")
    @classmethod
    def _drop_blank_constraints(cls, value: list[str]) -> list[str]:
        return [c.strip() for c in value if c and c.strip()]

    def prompt_inputs(self) -> PromptInputs:
        return PromptInputs(
            product_category=self.product_category,
            brand_tone=self.brand_tone,
            product_description=self.product_description,
            constraints=list(self.constraints),
        )


class JobResponse(BaseModel):
    id: str
    status: JobStatus
    mode: Mode
    project_id: str
    input_asset_id: str
    output_asset_id: str | None = None
    error: str | None = None
    failure_reason_code: str | None = None
    cost_units: int = 0
    created_at: str
    updated_at: str


class AssetResponse(BaseModel):
    id: str
    project_id: str
    kind: str
    mode: Mode | None = None
    source_asset_id: str | None = None
    job_id: str | None = None
    mime_type: str
    width: int | None = None
    height: int | None = None
    storage_bucket: str
    storage_path: str
    prompt_version: str | None = None
    prompt_payload: dict | None = None
    created_at: str


class CreditSummaryResponse(BaseModel):
    user_id: str
    balance: int
    transaction_count: int
    total_earned: int
    total_spent: int


class AdminGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    credits: int = Field(gt=0)
    reason: CreditReason = CreditReason.ADMIN_ADJUSTMENT
    note: str = "manual grant"
    ref_id: str | None = None
