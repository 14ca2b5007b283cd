"""In-memory result types for sync runs."""
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from sourcesync.models.sync import RUN_COMPLETED, SyncRun

SCOPE_ITEM = "item"
SCOPE_SUB_ENTITY = "sub_entity"

# Cap on errors persisted with a run; the in-memory report keeps all of them
MAX_PERSISTED_ERRORS = 100


@dataclass
class SyncError:
    """One item- or attachment-level failure within a run."""

    scope: str  # SCOPE_ITEM | SCOPE_SUB_ENTITY
    label: str
    message: str
    remote_id: Optional[str] = None


@dataclass
class ReconcileOutcome:
    written: bool
    item_id: Optional[int] = None
    sub_entities_inserted: int = 0
    sub_entities_skipped: int = 0
    errors: List[SyncError] = field(default_factory=list)


@dataclass
class SyncReport:
    """Final outcome of one run, as handed back to the trigger caller."""

    run_id: int
    target_id: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    items_processed: int = 0
    items_updated: int = 0
    error_message: Optional[str] = None
    errors: List[SyncError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RUN_COMPLETED

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @classmethod
    def from_run(cls, run: SyncRun, errors: Optional[List[SyncError]] = None) -> "SyncReport":
        if errors is None:
            errors = errors_from_json(run.errors_json)
        return cls(
            run_id=run.id,
            target_id=run.target_id,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            items_processed=run.items_processed,
            items_updated=run.items_updated,
            error_message=run.error_message,
            errors=list(errors),
        )


@dataclass
class AutoSyncResult:
    target_id: int
    target_name: str
    report: Optional[SyncReport] = None
    error: Optional[str] = None


@dataclass
class AutoSyncSummary:
    due: int = 0
    results: List[AutoSyncResult] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(
            1 for r in self.results
            if r.error is not None or (r.report and not r.report.succeeded)
        )


def errors_to_json(errors: List[SyncError]) -> Optional[str]:
    if not errors:
        return None
    return json.dumps([asdict(e) for e in errors[:MAX_PERSISTED_ERRORS]])


def errors_from_json(raw: Optional[str]) -> List[SyncError]:
    if not raw:
        return []
    return [SyncError(**e) for e in json.loads(raw)]
