from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ItemType = Literal["provider", "listing", "package", "product"]
MatchMode = Literal["fuzzy", "geo"]
JobStatus = Literal["queued", "running", "finished", "failed"]
SuggestionStatus = Literal["pending", "committed"]
LinkStatus = Literal["linked", "unlinked"]
AuditAction = Literal["link", "update", "unlink", "rollback"]


class AutoLinkRequest(BaseModel):
    village_id: str = Field(min_length=1)
    mode: MatchMode = "fuzzy"
    radius_meters: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1, le=1000)


class AutoLinkOut(BaseModel):
    job_id: str
    status: JobStatus
    message: str = "Auto-link job started"


class LinkJobOut(BaseModel):
    id: str
    village_id: str
    mode: str
    radius_meters: int
    limit: int
    status: JobStatus
    created_by: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    suggestion_count: int = 0
    error_message: str | None = None


class CandidateDataOut(BaseModel):
    name: str
    item_type: ItemType | None = None
    district_id: str | None = None
    matched_on: str | None = None


class SuggestionOut(BaseModel):
    id: str
    job_id: str
    village_id: str
    item_type: ItemType
    item_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    source: str
    candidate_data: CandidateDataOut
    status: SuggestionStatus
    created_at: datetime


class LinkJobDetailOut(BaseModel):
    job: LinkJobOut
    suggestions: list[SuggestionOut] = Field(default_factory=list)


class CommitRequest(BaseModel):
    job_id: str = Field(min_length=1)
    suggestion_ids: list[str] = Field(min_length=1)


class CommitOut(BaseModel):
    committed_count: int
    errors: list[str] = Field(default_factory=list)


class BulkImportRequest(BaseModel):
    village_id: str = Field(min_length=1)
    # rows stay loosely typed so one bad row is reported instead of rejecting the batch
    items: list[dict[str, Any]] = Field(min_length=1)


class BulkImportErrorOut(BaseModel):
    row: int
    error: str


class BulkImportOut(BaseModel):
    success_count: int
    errors: list[BulkImportErrorOut] = Field(default_factory=list)


class RollbackRequest(BaseModel):
    audit_id: str = Field(min_length=1)
    reason: str | None = None


class PurgeCacheRequest(BaseModel):
    village_slug: str = Field(min_length=1)


class PurgeCacheOut(BaseModel):
    success: bool
    message: str


class LinkOut(BaseModel):
    village_id: str
    item_type: ItemType
    item_id: str
    status: LinkStatus
    promote: bool = False
    priority: int = 0
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class LinkCountsOut(BaseModel):
    provider: int = 0
    listing: int = 0
    package: int = 0
    product: int = 0


class LinkListOut(BaseModel):
    links: list[LinkOut] = Field(default_factory=list)
    counts: LinkCountsOut = Field(default_factory=LinkCountsOut)


class LinkUpsertRequest(BaseModel):
    village_id: str = Field(min_length=1)
    item_type: ItemType
    item_id: str = Field(min_length=1)
    promote: bool | None = None
    priority: int | None = None
    reason: str | None = None


class LinkPatchRequest(BaseModel):
    promote: bool | None = None
    priority: int | None = None
    status: LinkStatus | None = None
    reason: str | None = None


class UnlinkOut(BaseModel):
    success: bool
    link: LinkOut | None = None


class AuditEntryOut(BaseModel):
    id: str
    village_id: str
    item_type: ItemType
    item_id: str
    action: AuditAction
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    changed_by: str | None = None
    reason: str | None = None
    created_at: datetime


class RollbackOut(BaseModel):
    success: bool
    message: str
    audit_entry: AuditEntryOut | None = None
