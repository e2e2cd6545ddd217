from pydantic import BaseModel, Field


class QueueMetricsOut(BaseModel):
    pending: int
    processing: int
    done: int
    failed: int
    depth: int
    backlog_pending: int
    stale_processing: int
    archived: int
    oldest_pending_age_seconds: float | None = None
    oldest_processing_age_seconds: float | None = None


class DedupMetricsOut(BaseModel):
    unique_content: int
    total_receipts: int
    duplicate_receipts: int
    max_receipt_count: int
    reuse_rate: float
    receipt_count_distribution: dict[str, int] = Field(default_factory=dict)
    ineligible_by_reason: dict[str, int] = Field(default_factory=dict)


class LeaderElectionMetricsOut(BaseModel):
    window_hours: int
    decisions: int
    pending_decisions: int
    contenders: int
    max_contenders: int
    takeovers: int
    fan_out_rows: int
    checks_avoided: int


class ReapOut(BaseModel):
    requeued: int
    failed: int


class ArchiveRequest(BaseModel):
    retention_hours: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1, le=10000)
    max_batches: int | None = Field(default=None, ge=1, le=500)


class ArchiveOut(BaseModel):
    archived: int
    batches: int


class CursorAdvanceRequest(BaseModel):
    position: int = Field(ge=0)


class CursorOut(BaseModel):
    scope_key: str
    floor_position: int
    last_processed_position: int
    moved: bool
    backfill_done: bool


class MaintenanceOut(BaseModel):
    requeued: int
    failed: int
    expired_matches: int
    floors_advanced: int
    archived: int
