"""
Data model for the invoice exception resolution pipeline.

ExceptionRecord -> Evidence -> AnalysisResult -> UpdatePlanItem -> UpdateOutcome
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


FIX_DATA_MARKER = "SUGGESTED_FIX_DATA:"
TOO_LARGE_PREFIX = "PDF_TOO_LARGE:"
EXTRACTION_FAILED_MESSAGE = "PDF text extraction failed."

REQUIRED_IDENTITY_FIELDS = ("file_name", "group_id", "inv_num")

NO_MATCH = "no matching document"
NOT_ATTEMPTED = "not attempted"


# =============================================================================
# ENUMS
# =============================================================================

class EvidenceKind(Enum):
    TEXT = "text"
    TOO_LARGE = "too_large"
    FAILED = "failed"


class RecordStage(Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    EVIDENCE_GATED = "evidence_gated"
    EVIDENCE_READY = "evidence_ready"
    PROMPTING = "prompting"
    INFERRING = "inferring"
    PARSED = "parsed"


class UpdateStatus(Enum):
    APPLIED = "applied"
    NO_OP = "no_op"
    NOT_APPLIED = "not_applied"


# =============================================================================
# RECORDS
# =============================================================================

def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _flatten_exception_types(item: Mapping[str, Any]) -> Tuple[str, ...]:
    if item.get("exception_types"):
        return tuple(str(t) for t in item["exception_types"])

    exceptions = item.get("exceptions") or {}
    types = []
    for section in ("header", "line_item"):
        for entry in exceptions.get(section) or []:
            if isinstance(entry, dict) and entry.get("exception_type"):
                types.append(str(entry["exception_type"]))
    return tuple(types)


@dataclass(frozen=True)
class ExceptionRecord:
    """Snapshot of an invoice record at query time. Never mutated."""
    report_type: str
    file_name: Optional[str] = None
    group_id: Optional[str] = None
    inv_num: Optional[str] = None
    supplier: Optional[str] = None
    status: Optional[str] = None
    pending_reason: Optional[str] = None
    total: Any = None
    inv_date: Optional[str] = None
    po_num: Optional[str] = None
    ship_to: Optional[str] = None
    exception_types: Tuple[str, ...] = ()
    exceptions: Mapping[str, Any] = field(default_factory=dict)
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Mapping[str, Any], report_type: str) -> "ExceptionRecord":
        return cls(
            report_type=report_type,
            file_name=item.get("file_name"),
            group_id=item.get("group_id"),
            inv_num=item.get("inv_num"),
            supplier=item.get("supplier"),
            status=item.get("status"),
            pending_reason=item.get("pending_reason"),
            total=item.get("total"),
            inv_date=item.get("inv_date"),
            po_num=item.get("po_num"),
            ship_to=item.get("ship_to"),
            exception_types=_flatten_exception_types(item),
            exceptions=item.get("exceptions") or {},
            data=dict(item),
        )

    @property
    def record_id(self) -> str:
        return self.file_name or f"{self.group_id}/{self.inv_num}"

    def missing_identity(self) -> List[str]:
        return [name for name in REQUIRED_IDENTITY_FIELDS if _blank(getattr(self, name))]

    def exception_diff(self) -> Optional[Any]:
        """Variance amount of the INV_AMOUNT_VARIANCE header exception, if any."""
        for entry in self.exceptions.get("header") or []:
            if isinstance(entry, dict) and entry.get("exception_type") == "INV_AMOUNT_VARIANCE":
                return entry.get("diff")
        return None


@dataclass(frozen=True)
class Evidence:
    kind: EvidenceKind
    text: str = ""
    message: str = ""

    @classmethod
    def from_text(cls, text: str) -> "Evidence":
        return cls(EvidenceKind.TEXT, text=text)

    @classmethod
    def too_large(cls, file_name: str, page_count: int, max_pages: int) -> "Evidence":
        message = (
            f"{TOO_LARGE_PREFIX} Document '{file_name}' has {page_count} pages "
            f"(max {max_pages} allowed). Skipping OCR."
        )
        return cls(EvidenceKind.TOO_LARGE, message=message)

    @classmethod
    def failed(cls, cause: str = "") -> "Evidence":
        message = EXTRACTION_FAILED_MESSAGE if not cause else f"{EXTRACTION_FAILED_MESSAGE} ({cause})"
        return cls(EvidenceKind.FAILED, message=message)

    @property
    def usable(self) -> bool:
        return self.kind == EvidenceKind.TEXT


# =============================================================================
# ANALYSIS RESULTS
# =============================================================================

@dataclass(frozen=True)
class SuggestedFix:
    fields: Mapping[str, Any]
    confidence: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SuggestedFix":
        fields = {k: v for k, v in payload.items() if k != "confidence"}
        return cls(fields=fields, confidence=payload.get("confidence"))

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data

    def has_numeric_confidence(self) -> bool:
        return isinstance(self.confidence, (int, float)) and not isinstance(self.confidence, bool)


@dataclass(frozen=True)
class OriginalSnapshot:
    group_id: Optional[str] = None
    inv_num: Optional[str] = None
    total: Any = None
    inv_date: Optional[str] = None
    status: Optional[str] = None
    pending_reason: Optional[str] = None
    ship_to: Optional[str] = None
    po_num: Optional[str] = None
    supplier: Optional[str] = None

    @classmethod
    def of(cls, record: ExceptionRecord) -> "OriginalSnapshot":
        return cls(
            group_id=record.group_id,
            inv_num=record.inv_num,
            total=record.total,
            inv_date=record.inv_date,
            status=record.status,
            pending_reason=record.pending_reason,
            ship_to=record.ship_to,
            po_num=record.po_num,
            supplier=record.supplier,
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "OriginalSnapshot":
        data = data or {}
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class AnalysisResult:
    file_name: str
    report_type: str
    diagnosis: str
    original_snapshot: OriginalSnapshot
    suggested_fix: Optional[SuggestedFix] = None
    supplier: str = "N/A"
    stage: RecordStage = RecordStage.PARSED
    analyzed_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": self.report_type,
            "supplier": self.supplier,
            "diagnosis": self.diagnosis,
            "suggested_fix": self.suggested_fix.to_dict() if self.suggested_fix else None,
            "original_snapshot": self.original_snapshot.to_dict(),
            "stage": self.stage.value,
            "analyzed_at": self.analyzed_at,
        }

    @classmethod
    def from_dict(cls, file_name: str, data: Mapping[str, Any]) -> "AnalysisResult":
        fix = data.get("suggested_fix")
        return cls(
            file_name=file_name,
            report_type=data.get("report_type", ""),
            diagnosis=data.get("diagnosis", ""),
            original_snapshot=OriginalSnapshot.from_dict(data.get("original_snapshot")),
            suggested_fix=SuggestedFix.from_payload(fix) if isinstance(fix, dict) else None,
            supplier=data.get("supplier") or "N/A",
            stage=RecordStage(data.get("stage", RecordStage.PARSED.value)),
            analyzed_at=data.get("analyzed_at", ""),
        )


# =============================================================================
# UPDATES
# =============================================================================

@dataclass(frozen=True)
class UpdateRule:
    """Which field an exception type may correct, and the state that must still hold."""
    field: str
    status: str
    exception_type: str


UPDATE_RULES: Dict[str, UpdateRule] = {
    "SHIPTOISSUE": UpdateRule(field="ship_to", status="DISPUTED", exception_type="PO_NOT_FOUND"),
    "PO_NOT_FOUND": UpdateRule(field="po_num", status="DISPUTED", exception_type="PO_NOT_FOUND"),
}


@dataclass(frozen=True)
class UpdatePlanItem:
    file_name: str
    group_id: str
    inv_num: str
    report_type: str
    field: str
    current_value: Any
    suggested_value: Any
    confidence: Any

    @property
    def rule(self) -> UpdateRule:
        return UPDATE_RULES[self.report_type]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UpdatePlanItem":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class UpdateOutcome:
    item: UpdatePlanItem
    status: UpdateStatus
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.to_dict()
        data.update({"status": self.status.value, "reason": self.reason})
        return data


@dataclass
class UpdateStats:
    total_planned_updates: int = 0
    mode_selected: str = "all"
    table_name: str = ""
    outcomes: List[UpdateOutcome] = field(default_factory=list)
    aborted: bool = False
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def count(self, status: UpdateStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def failures(self) -> List[UpdateOutcome]:
        return [o for o in self.outcomes if o.status == UpdateStatus.NOT_APPLIED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "table_name": self.table_name,
            "mode_selected": self.mode_selected,
            "total_planned_updates": self.total_planned_updates,
            "updates_attempted": sum(1 for o in self.outcomes if not o.reason.startswith(NOT_ATTEMPTED)),
            "successful_updates": self.count(UpdateStatus.APPLIED),
            "unchanged_updates": self.count(UpdateStatus.NO_OP),
            "failed_updates": len(self.failures),
            "aborted": self.aborted,
            "failures_details": [o.to_dict() for o in self.failures],
        }
