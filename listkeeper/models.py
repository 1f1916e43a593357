#!/usr/bin/env python3
"""
models.py

Data structures shared by every maintenance component: list handles,
membership records, suppression and rebalancing plans, validation outcomes,
per-operation results and the audited MaintenanceRun.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union


class ListHandle(Enum):
    """Logical lists of the universe"""
    MASTER = "master"
    CAMPAIGN_1 = "campaign_1"
    CAMPAIGN_2 = "campaign_2"
    CAMPAIGN_3 = "campaign_3"
    SUPPRESSION = "suppression"

    @property
    def is_campaign(self) -> bool:
        return self in CAMPAIGN_LISTS

    @classmethod
    def parse(cls, value: Any) -> Optional["ListHandle"]:
        """Lenient lookup by value or name; None when unrecognized"""
        if isinstance(value, ListHandle):
            return value
        if not isinstance(value, str):
            return None
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        for handle in cls:
            if key in (handle.value, handle.name.lower()):
                return handle
        return None


CAMPAIGN_LISTS = (ListHandle.CAMPAIGN_1, ListHandle.CAMPAIGN_2, ListHandle.CAMPAIGN_3)
ALL_LISTS = tuple(ListHandle)


class RunStatus(Enum):
    """Terminal states of a maintenance run"""
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class Workflow(Enum):
    POST_SEND = "post_send_maintenance"
    WEEKLY_SWEEP = "weekly_sweep"


# =============================================================================
# 📋 CONTACTS & MEMBERSHIP
# =============================================================================

@dataclass(frozen=True)
class MembershipRecord:
    """Observed (contact, list) pair - reconciled, never authoritative"""
    contact_id: int
    list_handle: ListHandle
    observed_at: datetime


@dataclass
class ListMetadata:
    """Cached per-list size"""
    list_handle: ListHandle
    size: int
    last_synced_at: datetime
    degraded: bool = False


@dataclass(frozen=True)
class BounceEvent:
    contact_id: int
    email: str
    bounce_type: str  # "hard" | "soft" | "spam"
    campaign_id: str = ""
    bounced_at: Optional[datetime] = None
    error: str = ""

    @property
    def is_hard(self) -> bool:
        return self.bounce_type == "hard"


# =============================================================================
# 🧾 PLANS
# =============================================================================

@dataclass
class SuppressionEntry:
    contact_id: Any
    reason: Any
    evidence: Any = None
    email: Optional[str] = None


@dataclass
class SuppressionPlan:
    entries: List[SuppressionEntry] = field(default_factory=list)
    source: str = "advisory"  # advisory | fallback | follow_up
    summary: str = ""
    confidence: Optional[float] = None


@dataclass
class Movement:
    """Move one contact between campaign lists; from_list None = backfill from master"""
    to_list: Any
    from_list: Any = None
    contact_id: Any = None
    reason: str = ""

    @property
    def is_backfill(self) -> bool:
        return self.from_list is None


@dataclass
class RebalancingPlan:
    target_counts: Dict[ListHandle, int] = field(default_factory=dict)
    movements: List[Movement] = field(default_factory=list)
    source: str = "advisory"
    summary: str = ""
    confidence: Optional[float] = None


# Rejection reasons
ALREADY_SUPPRESSED = "already_suppressed"
UNKNOWN_CONTACT = "unknown_contact"
DEFERRED_CAP_EXCEEDED = "deferred_cap_exceeded"
STALE_SOURCE = "stale_source"
ALREADY_MEMBER = "already_member"
OVERCORRECTION = "overcorrection"
MALFORMED = "malformed"
DUPLICATE_ENTRY = "duplicate_entry"
SUPPRESSED_CONTACT = "suppressed_contact"
DUAL_MEMBERSHIP = "dual_membership"
INSUFFICIENT_SUPPLY = "insufficient_supply"

# Idempotent no-ops: already applied, nothing to follow up
NO_OP_REASONS = frozenset({ALREADY_SUPPRESSED, ALREADY_MEMBER, DUPLICATE_ENTRY})


@dataclass
class Rejection:
    entry: Union[SuppressionEntry, Movement]
    reason: str
    detail: str = ""

    @property
    def is_error(self) -> bool:
        return self.reason not in NO_OP_REASONS


@dataclass
class ValidatedPlan:
    kind: str  # "suppression" | "rebalancing"
    accepted: List[Union[SuppressionEntry, Movement]] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)
    truncated_for_safety: bool = False
    source: str = "advisory"
    # Backfill slots the plan asked for but master could not supply
    deficit: int = 0

    @property
    def deferred(self) -> List[Rejection]:
        return [r for r in self.rejected if r.reason == DEFERRED_CAP_EXCEEDED]

    @property
    def error_rejections(self) -> List[Rejection]:
        return [r for r in self.rejected if r.is_error]


# =============================================================================
# ⚙️ EXECUTION RESULTS
# =============================================================================

APPLIED = "applied"
FAILED = "failed"
ORPHANED = "orphaned"
CANCELLED = "cancelled"


@dataclass
class OperationResult:
    contact_id: Optional[int]
    operation: str  # "suppress" | "move"
    status: str
    entry: Union[SuppressionEntry, Movement, None] = None
    error: str = ""
    lists_touched: List[ListHandle] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == APPLIED


@dataclass
class ExecutionResult:
    kind: str
    results: List[OperationResult] = field(default_factory=list)
    touched_lists: Set[ListHandle] = field(default_factory=set)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def applied(self) -> int:
        return self.count(APPLIED)

    @property
    def failures(self) -> List[OperationResult]:
        return [r for r in self.results if r.status != APPLIED]


# =============================================================================
# 🧾 MAINTENANCE RUN
# =============================================================================

@dataclass
class MaintenanceRun:
    """One audited execution of a workflow against the five-list set"""
    run_id: str
    workflow: Workflow
    started_at: datetime
    trigger: str = ""
    before_state: Dict[str, int] = field(default_factory=dict)
    after_state: Dict[str, int] = field(default_factory=dict)
    suppression_plan: Optional[ValidatedPlan] = None
    rebalancing_plan: Optional[ValidatedPlan] = None
    operation_results: List[OperationResult] = field(default_factory=list)
    status: Optional[RunStatus] = None
    used_fallback: bool = False
    rebalance_triggered: bool = False
    cancelled: bool = False
    abort_reason: str = ""
    deviation_before: Optional[float] = None
    deviation_after: Optional[float] = None
    notes: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    finalized: bool = False

    def __setattr__(self, name, value):
        if getattr(self, "finalized", False):
            raise AttributeError(f"MaintenanceRun {self.run_id} is finalized")
        super().__setattr__(name, value)

    def finalize(self, status: RunStatus, finished_at: datetime):
        self.status = status
        self.finished_at = finished_at
        self.finalized = True

    @property
    def rejections(self) -> List[Rejection]:
        rejected = []
        for plan in (self.suppression_plan, self.rebalancing_plan):
            if plan is not None:
                rejected.extend(plan.rejected)
        return rejected

    def summary_counts(self) -> Dict[str, int]:
        results = self.operation_results
        return {
            "suppressed": sum(1 for r in results if r.operation == "suppress" and r.status == APPLIED),
            "rebalanced": sum(1 for r in results if r.operation == "move" and r.status == APPLIED),
            "rejected": sum(1 for r in self.rejections if r.is_error),
            "no_op": sum(1 for r in self.rejections if not r.is_error),
            "deferred": sum(1 for r in self.rejections if r.reason == DEFERRED_CAP_EXCEEDED),
            "failed": sum(1 for r in results if r.status in (FAILED, CANCELLED)),
            "orphaned": sum(1 for r in results if r.status == ORPHANED),
        }

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe representation for audit storage"""
        return to_jsonable({
            "run_id": self.run_id,
            "workflow": self.workflow,
            "trigger": self.trigger,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "suppression_plan": self.suppression_plan,
            "rebalancing_plan": self.rebalancing_plan,
            "operation_results": self.operation_results,
            "used_fallback": self.used_fallback,
            "rebalance_triggered": self.rebalance_triggered,
            "cancelled": self.cancelled,
            "abort_reason": self.abort_reason,
            "deviation_before": self.deviation_before,
            "deviation_after": self.deviation_after,
            "notes": self.notes,
            "counts": self.summary_counts(),
        })


@dataclass
class ValidationReport:
    """Pre-send readiness of one list"""
    list_handle: ListHandle
    expected_count: int
    actual_count: Optional[int]
    status: str  # ready | warning | blocked
    degraded: bool = False
    issues: List[Dict[str, str]] = field(default_factory=list)
    deviation_pct: Optional[float] = None
    checked_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"

    def to_dict(self) -> Dict[str, Any]:
        data = to_jsonable(asdict(self))
        data["is_ready"] = self.is_ready
        return data


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses, enums, sets and datetimes"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "__dataclass_fields__"):
        return {k: to_jsonable(getattr(value, k)) for k in value.__dataclass_fields__}
    if isinstance(value, dict):
        return {to_jsonable(k) if isinstance(k, Enum) else k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(to_jsonable(v) for v in value)
    return value
