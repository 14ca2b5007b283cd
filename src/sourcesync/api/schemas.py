"""Request/response models for the HTTP API."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sourcesync.models.sync import SyncRun
from sourcesync.models.target import SyncTarget
from sourcesync.sync.models import AutoSyncSummary, SyncReport


class TargetCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    kind: str
    source_id: str = Field(min_length=1)
    auto_sync_enabled: bool = False
    is_private: bool = False
    credential: Optional[str] = None


class TargetSettingsRequest(BaseModel):
    auto_sync_enabled: Optional[bool] = None
    is_private: Optional[bool] = None
    credential: Optional[str] = None


class SourceCheckRequest(BaseModel):
    kind: str
    source_id: str = Field(min_length=1)
    credential: Optional[str] = None


class SourceCheckResponse(BaseModel):
    exists: bool
    estimated_total: Optional[int] = None
    error: Optional[str] = None


class TargetResponse(BaseModel):
    """A target as exposed over HTTP. The credential itself is never returned."""

    id: int
    name: str
    kind: str
    source_id: str
    auto_sync_enabled: bool
    is_private: bool
    has_credential: bool
    last_synced_at: Optional[datetime]
    total_item_count: int

    @classmethod
    def from_target(cls, target: SyncTarget) -> "TargetResponse":
        return cls(
            id=target.id,
            name=target.name,
            kind=target.kind,
            source_id=target.source_id,
            auto_sync_enabled=target.auto_sync_enabled,
            is_private=target.is_private,
            has_credential=bool(target.credential),
            last_synced_at=target.last_synced_at,
            total_item_count=target.total_item_count,
        )


class SyncErrorResponse(BaseModel):
    scope: str
    label: str
    message: str
    remote_id: Optional[str] = None


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    target_id: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    items_processed: int
    items_updated: int
    error_count: int
    error_message: Optional[str]


class SyncLogResponse(SyncRunResponse):
    target_name: str

    @classmethod
    def from_row(cls, run: SyncRun, target_name: str) -> "SyncLogResponse":
        data = SyncRunResponse.model_validate(run).model_dump()
        return cls(**data, target_name=target_name)


class SyncReportResponse(BaseModel):
    run_id: int
    target_id: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    items_processed: int
    items_updated: int
    error_count: int
    error_message: Optional[str]
    errors: List[SyncErrorResponse]

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncReportResponse":
        return cls(
            run_id=report.run_id,
            target_id=report.target_id,
            status=report.status,
            started_at=report.started_at,
            completed_at=report.completed_at,
            items_processed=report.items_processed,
            items_updated=report.items_updated,
            error_count=report.error_count,
            error_message=report.error_message,
            errors=[SyncErrorResponse(**vars(e)) for e in report.errors],
        )


class AutoSyncTargetResult(BaseModel):
    target_id: int
    target_name: str
    status: str
    error: Optional[str] = None
    report: Optional[SyncReportResponse] = None


class AutoSyncResponse(BaseModel):
    due: int
    failed: int
    results: List[AutoSyncTargetResult]

    @classmethod
    def from_summary(cls, summary: AutoSyncSummary) -> "AutoSyncResponse":
        results = []
        for r in summary.results:
            report = SyncReportResponse.from_report(r.report) if r.report else None
            results.append(AutoSyncTargetResult(
                target_id=r.target_id,
                target_name=r.target_name,
                status=report.status if report else "not_run",
                error=r.error,
                report=report,
            ))
        return cls(due=summary.due, failed=summary.failed, results=results)
