from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from typing_extensions import Annotated, Literal

from .stages import CaseStage


SNAPSHOT_SCHEMA_VERSION = 2


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    parsed = datetime.fromisoformat(v)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_record_id() -> str:
    return f"SR-{uuid.uuid4().hex[:16]}"


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


class TransitionKind(str, Enum):
    CREATED = "created"
    ADVANCE = "advance"
    STAGE_DELETED = "stage_deleted"
    STAGE_RECREATED = "stage_recreated"


# ---------------------------------------------------------------------------
# Stage snapshots (tagged by record_type, versioned by schema_version)
# ---------------------------------------------------------------------------

class _SnapshotBase(BaseModel):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    document_number: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class EnquirySnapshot(_SnapshotBase):
    record_type: Literal["enquiry"] = "enquiry"
    description: Optional[str] = None


class EstimationSnapshot(_SnapshotBase):
    record_type: Literal["estimation"] = "estimation"
    total_final_price: Optional[float] = None


class QuotationSnapshot(_SnapshotBase):
    record_type: Literal["quotation"] = "quotation"
    grand_total: Optional[float] = None
    valid_until: Optional[str] = None


class SalesOrderSnapshot(_SnapshotBase):
    record_type: Literal["sales_order"] = "sales_order"
    total_amount: Optional[float] = None
    quotation_number: Optional[str] = None


class ProductionOrderSnapshot(_SnapshotBase):
    record_type: Literal["production_order"] = "production_order"
    planned_start: Optional[str] = None
    planned_end: Optional[str] = None


class DeliveryChallanSnapshot(_SnapshotBase):
    record_type: Literal["delivery_challan"] = "delivery_challan"
    dispatch_date: Optional[str] = None
    transporter: Optional[str] = None


StageSnapshot = Annotated[
    Union[
        EnquirySnapshot,
        EstimationSnapshot,
        QuotationSnapshot,
        SalesOrderSnapshot,
        ProductionOrderSnapshot,
        DeliveryChallanSnapshot,
    ],
    Field(discriminator="record_type"),
]

_SNAPSHOT_ADAPTER: TypeAdapter = TypeAdapter(StageSnapshot)

STAGE_RECORD_TYPES: Dict[CaseStage, str] = {
    CaseStage.ENQUIRY: "enquiry",
    CaseStage.ESTIMATION: "estimation",
    CaseStage.QUOTATION: "quotation",
    CaseStage.ORDER: "sales_order",
    CaseStage.PRODUCTION: "production_order",
    CaseStage.DELIVERY: "delivery_challan",
}

# Legacy (schema v1) backups keyed stage rows by these names and id/amount columns
_LEGACY_STAGE_KEYS: Dict[str, str] = {
    "enquiry": "enquiry",
    "estimation": "estimation",
    "quotation": "quotation",
    "sales_order": "sales_order",
    "order": "sales_order",
    "production": "production_order",
    "production_order": "production_order",
    "delivery": "delivery_challan",
    "delivery_challan": "delivery_challan",
}

_LEGACY_ID_FIELDS: Dict[str, str] = {
    "enquiry": "enquiry_id",
    "estimation": "estimation_id",
    "quotation": "quotation_id",
    "sales_order": "sales_order_id",
    "production_order": "production_order_id",
    "delivery_challan": "dc_number",
}

_LEGACY_AMOUNT_FIELDS: Dict[str, str] = {
    "estimation": "total_final_price",
    "quotation": "grand_total",
    "sales_order": "total_amount",
}


def _upgrade_legacy_snapshot(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a v1 `{stage, stage_data, deletion_info}` backup into the v2 shape."""
    stage = str(raw.get("stage") or "")
    record_type = _LEGACY_STAGE_KEYS.get(stage)
    if record_type is None:
        raise ValueError(f"unknown legacy snapshot stage: {stage!r}")

    stage_data = raw.get("stage_data") or {}
    row = dict(stage_data.get(stage) or stage_data.get(record_type) or {})

    upgraded: Dict[str, Any] = {
        "record_type": record_type,
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "document_number": row.pop(_LEGACY_ID_FIELDS[record_type], None),
        "status": row.pop("status", None),
        "notes": row.pop("notes", None),
    }
    amount_field = _LEGACY_AMOUNT_FIELDS.get(record_type)
    if amount_field and amount_field in row:
        upgraded[amount_field] = row.pop(amount_field)
    if record_type == "enquiry" and "description" in row:
        upgraded["description"] = row.pop("description")
    if upgraded["document_number"] is not None:
        upgraded["document_number"] = str(upgraded["document_number"])
    upgraded["attributes"] = row
    return upgraded


def load_snapshot(raw: Union[str, Dict[str, Any], BaseModel]) -> StageSnapshot:
    """
    Parse a stored snapshot, upgrading older schema versions.

    Accepts JSON text or an already-decoded dict.
    """
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, str):
        raw = json.loads(raw)
    data = dict(raw)
    if "record_type" not in data or int(data.get("schema_version", 1)) < SNAPSHOT_SCHEMA_VERSION:
        if "stage_data" in data:
            data = _upgrade_legacy_snapshot(data)
        else:
            data["schema_version"] = SNAPSHOT_SCHEMA_VERSION
    return _SNAPSHOT_ADAPTER.validate_python(data)


def dump_snapshot(snapshot: StageSnapshot) -> str:
    return json_dumps(snapshot.model_dump(mode="json"))


def snapshot_matches_stage(snapshot: StageSnapshot, stage: CaseStage) -> bool:
    return STAGE_RECORD_TYPES.get(CaseStage(stage)) == snapshot.record_type


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------

class CaseRecord(BaseModel):
    case_id: int
    case_number: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    project_name: str = Field(min_length=1)
    current_state: CaseStage
    assigned_to: Optional[str] = None
    version: int = Field(ge=1)
    created_by: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    model_config = {"extra": "forbid"}

    @property
    def is_terminal(self) -> bool:
        return self.current_state in (CaseStage.CLOSED, CaseStage.REJECTED)


class Transition(BaseModel):
    """One row of the append-only transition log."""
    id: int
    case_id: int
    from_state: Optional[CaseStage] = None
    to_state: CaseStage
    transitioned_by: str
    transition_date: datetime
    duration_in_state: float = Field(ge=0, description="Seconds spent in from_state")
    notes: Optional[str] = None
    reference_id: Optional[str] = None
    kind: TransitionKind = TransitionKind.ADVANCE

    model_config = {"extra": "forbid"}


class CaseAssignment(BaseModel):
    """One row of the append-only assignment history."""
    id: int
    case_id: int
    assigned_to: Optional[str] = None
    previous_assignee: Optional[str] = None
    assigned_by: str
    assigned_at: datetime
    notes: Optional[str] = None

    model_config = {"extra": "forbid"}


class StageRecord(BaseModel):
    """A stage-specific business record registered with the engine."""
    id: str = Field(default_factory=new_record_id)
    case_id: int
    stage: CaseStage
    snapshot: StageSnapshot
    created_by: str
    created_at: datetime
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    restored_from_backup: Optional[int] = None

    model_config = {"extra": "forbid"}

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


class StageBackup(BaseModel):
    id: int
    case_id: int
    case_number: str
    stage: CaseStage
    stage_record_id: Optional[str] = None
    snapshot_data: Optional[StageSnapshot] = None
    previous_state: CaseStage
    reverted_to_state: CaseStage
    deleted_at: datetime
    deleted_by: str
    deletion_reason: Optional[str] = None
    recreated: bool = False
    recreated_at: Optional[datetime] = None
    recreated_by: Optional[str] = None
    recreated_record_id: Optional[str] = None

    model_config = {"extra": "forbid"}


# ---------------------------------------------------------------------------
# Read-side results
# ---------------------------------------------------------------------------

class StageProgress(BaseModel):
    stage: CaseStage
    name: str
    completed: bool
    reference_id: Optional[str] = None
    entered_at: Optional[datetime] = None


class WorkflowProgress(BaseModel):
    case_id: int
    case_number: str
    current_stage: CaseStage
    current_stage_name: str
    stages: List[StageProgress]
    completed_count: int
    total_stages: int
    progress_percentage: float
    definition_version: str


class StageAnalytics(BaseModel):
    stage: CaseStage
    samples: int
    avg_duration: float = Field(description="Average hours spent in the stage")
    delay_frequency: float
    efficiency: float
    sla_hours: float
    bottleneck_score: float


class PerformerStats(BaseModel):
    actor: str
    cases_handled: int
    transitions: int
    avg_completion_time: Optional[float] = Field(
        default=None, description="Average hours from creation to close of handled cases"
    )


class TrendPoint(BaseModel):
    month: str
    case_count: int
    closed_count: int
    avg_completion_time: Optional[float] = None


class SlaBreach(BaseModel):
    case_id: int
    case_number: str
    stage: CaseStage
    entered_at: datetime
    hours_in_state: float
    sla_hours: float


class CaseAnalytics(BaseModel):
    total_cases: int
    open_cases: int
    closed_cases: int
    rejected_cases: int
    completion_rate: float
    avg_completion_time: Optional[float] = None
    stage_analytics: Dict[str, StageAnalytics]
    bottleneck_analysis: List[StageAnalytics]
    top_performers: List[PerformerStats]
    performance_trends: List[TrendPoint]
    generated_at: datetime
