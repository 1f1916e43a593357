#!/usr/bin/env python3
"""
validator.py

Plan validator: turns an untrusted suppression or rebalancing plan into a
safe subset before execution.

Validation never raises for bad input and never mutates state. Every entry
ends up either accepted (normalized) or rejected with a reason code.
"""

import logging
import math
from typing import Any, Dict, Iterator, Optional, Set

from .balance import campaign_counts
from .config import EngineConfig
from .ledger import MembershipLedger
from .models import (
    ALREADY_MEMBER, ALREADY_SUPPRESSED, CAMPAIGN_LISTS, DEFERRED_CAP_EXCEEDED, DUAL_MEMBERSHIP,
    DUPLICATE_ENTRY, INSUFFICIENT_SUPPLY, MALFORMED, OVERCORRECTION, STALE_SOURCE, SUPPRESSED_CONTACT,
    UNKNOWN_CONTACT, ListHandle, Movement, RebalancingPlan, Rejection, SuppressionEntry, SuppressionPlan,
    ValidatedPlan,
)

logger = logging.getLogger(__name__)

_UNSPECIFIED = object()


def normalize_contact_id(value: Any, allow_unspecified: bool = False):
    """
    Coerce an untrusted contact id to a positive int.

    Returns None for malformed ids, or _UNSPECIFIED when the plan left the
    choice of contact to us (missing id or a placeholder string).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit() and int(stripped) > 0:
            return int(stripped)
        if allow_unspecified and not any(ch.isdigit() for ch in stripped):
            return _UNSPECIFIED
        return None
    if value is None and allow_unspecified:
        return _UNSPECIFIED
    return None


def _parse_source(value: Any):
    """from_list: None/"none"/"" means backfill from master; otherwise a campaign handle"""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "none", "null", "master"):
        return None
    if value == ListHandle.MASTER:
        return None
    handle = ListHandle.parse(value)
    return handle if handle is not None and handle.is_campaign else _UNSPECIFIED


class PlanValidator:
    """Validates plans against the ledger and the run's before-state"""

    def __init__(self, ledger: MembershipLedger, engine_config: Optional[EngineConfig] = None):
        self.ledger = ledger
        self.config = engine_config or EngineConfig()

    # =========================================================================
    # 🚫 SUPPRESSION PLANS
    # =========================================================================

    def suppression_cap(self, state: Dict) -> int:
        combined = sum(campaign_counts(state))
        return int(math.floor(combined * self.config.suppression_cap_pct / 100.0))

    def validate_suppression(self, plan: SuppressionPlan, state: Dict) -> ValidatedPlan:
        """
        Args:
            plan: Proposed suppressions from any source
            state: Per-list sizes of the run's before-state
        """
        validated = ValidatedPlan(kind="suppression", source=plan.source)
        cap = self.suppression_cap(state)
        seen: Set[int] = set()

        for entry in plan.entries:
            contact_id = normalize_contact_id(getattr(entry, "contact_id", None))
            reason = getattr(entry, "reason", None)
            evidence = getattr(entry, "evidence", None)

            if contact_id is None:
                validated.rejected.append(Rejection(entry, MALFORMED, "missing or invalid contact id"))
                continue
            if not isinstance(reason, str) or not reason.strip():
                validated.rejected.append(Rejection(entry, MALFORMED, "missing reason"))
                continue
            if evidence is None:
                validated.rejected.append(Rejection(entry, MALFORMED, "missing evidence"))
                continue
            if contact_id in seen:
                validated.rejected.append(Rejection(entry, DUPLICATE_ENTRY, "listed twice in plan"))
                continue
            seen.add(contact_id)

            if self.ledger.is_suppressed(contact_id):
                validated.rejected.append(Rejection(entry, ALREADY_SUPPRESSED))
                continue
            if not self.ledger.is_known(contact_id):
                validated.rejected.append(Rejection(entry, UNKNOWN_CONTACT, "not in master or any campaign list"))
                continue
            if len(validated.accepted) >= cap:
                validated.truncated_for_safety = True
                validated.rejected.append(Rejection(entry, DEFERRED_CAP_EXCEEDED, f"run cap is {cap}"))
                continue

            validated.accepted.append(SuppressionEntry(
                contact_id=contact_id,
                reason=reason.strip(),
                evidence=evidence,
                email=getattr(entry, "email", None),
            ))

        self._log_outcome(validated)
        return validated

    # =========================================================================
    # ⚖️ REBALANCING PLANS
    # =========================================================================

    def validate_rebalancing(self, plan: RebalancingPlan, state: Dict) -> ValidatedPlan:
        """
        Args:
            plan: Proposed target counts and ordered movements
            state: Per-list sizes of the run's before-state (post-suppression
                when validated after a suppression pass)
        """
        validated = ValidatedPlan(kind="rebalancing", source=plan.source)
        projected = dict(zip(CAMPAIGN_LISTS, campaign_counts(state)))
        claimed: Set[int] = set()
        backfill_pool = _FifoPool(lambda: self.ledger.backfill_candidates(exclude=claimed), claimed)

        for movement in plan.movements:
            to_list = ListHandle.parse(getattr(movement, "to_list", None))
            from_list = _parse_source(getattr(movement, "from_list", None))
            if to_list is None or not to_list.is_campaign:
                validated.rejected.append(Rejection(movement, MALFORMED, "destination is not a campaign list"))
                continue
            if from_list is _UNSPECIFIED or from_list == to_list:
                validated.rejected.append(Rejection(movement, MALFORMED, "invalid source list"))
                continue

            contact_id = normalize_contact_id(getattr(movement, "contact_id", None), allow_unspecified=True)
            if contact_id is None:
                validated.rejected.append(Rejection(movement, MALFORMED, "invalid contact id"))
                continue

            if len(validated.accepted) >= self.config.max_movements_per_run:
                validated.truncated_for_safety = True
                validated.rejected.append(Rejection(
                    movement, DEFERRED_CAP_EXCEEDED, f"run cap is {self.config.max_movements_per_run}"))
                continue

            if contact_id is _UNSPECIFIED:
                if from_list is None:
                    contact_id = backfill_pool.next()
                else:
                    contact_id = self._next_from_source(from_list, claimed)
                if contact_id is None:
                    validated.deficit += 1
                    validated.rejected.append(Rejection(
                        movement, INSUFFICIENT_SUPPLY,
                        "no eligible master contact left" if from_list is None else f"{from_list.value} has no movable contact"))
                    continue

            reason = self._movement_rejection(contact_id, from_list, to_list, claimed)
            if reason is None:
                reason = self._overcorrection(projected, from_list, to_list)
            if reason is not None:
                code, detail = reason
                validated.rejected.append(Rejection(movement, code, detail))
                continue

            claimed.add(contact_id)
            if from_list is not None:
                projected[from_list] -= 1
            projected[to_list] += 1
            validated.accepted.append(Movement(
                to_list=to_list,
                from_list=from_list,
                contact_id=contact_id,
                reason=getattr(movement, "reason", "") or "",
            ))

        self._log_outcome(validated)
        return validated

    def _movement_rejection(self, contact_id: int, from_list, to_list: ListHandle, claimed: Set[int]):
        if contact_id in claimed:
            return DUPLICATE_ENTRY, "contact already has a movement in this plan"
        if self.ledger.is_suppressed(contact_id):
            return SUPPRESSED_CONTACT, "suppressed contacts never re-enter campaign lists"
        if self.ledger.is_member(contact_id, to_list):
            return ALREADY_MEMBER, f"already in {to_list.value}"

        current = self.ledger.campaign_lists_of(contact_id)
        if from_list is None:
            if not self.ledger.is_member(contact_id, ListHandle.MASTER):
                return UNKNOWN_CONTACT, "backfill contact is not in master"
            if current:
                return DUAL_MEMBERSHIP, f"already in {current[0].value}"
            return None

        if from_list not in current:
            observed = current[0].value if current else "no campaign list"
            return STALE_SOURCE, f"ledger shows {observed}"
        if len(current) > 1:
            return DUAL_MEMBERSHIP, "contact is in more than one campaign list"
        return None

    def _overcorrection(self, projected: Dict[ListHandle, int], from_list, to_list: ListHandle):
        after = dict(projected)
        if from_list is not None:
            after[from_list] -= 1
        after[to_list] += 1

        target = sum(after.values()) / 3.0
        band = target * self.config.balance_tolerance_pct * self.config.overcorrection_factor / 100.0
        if after[to_list] - target > band:
            return OVERCORRECTION, f"{to_list.value} would end {after[to_list] - target:.0f} above target"
        if from_list is not None and target - after[from_list] > band:
            return OVERCORRECTION, f"{from_list.value} would end {target - after[from_list]:.0f} below target"
        return None

    def _next_from_source(self, from_list: ListHandle, claimed: Set[int]) -> Optional[int]:
        for contact_id in self.ledger.members_of(from_list):
            if contact_id in claimed or self.ledger.is_suppressed(contact_id):
                continue
            if self.ledger.campaign_lists_of(contact_id) == [from_list]:
                return contact_id
        return None

    def _log_outcome(self, validated: ValidatedPlan):
        reasons: Dict[str, int] = {}
        for rejection in validated.rejected:
            reasons[rejection.reason] = reasons.get(rejection.reason, 0) + 1
        logger.info(f"🔍 {validated.kind.title()} plan validated: {len(validated.accepted)} accepted, "
                    f"{len(validated.rejected)} rejected {reasons if reasons else ''}".rstrip())
        if validated.truncated_for_safety:
            logger.warning(f"⚠️ {validated.kind.title()} plan truncated by safety cap - "
                           f"{len(validated.deferred)} entries deferred for follow-up")


class _FifoPool:
    """Lazily walks backfill candidates oldest-first, skipping claimed ids"""

    def __init__(self, supplier, claimed: Set[int]):
        self._supplier = supplier
        self._claimed = claimed
        self._iterator: Optional[Iterator[int]] = None

    def next(self) -> Optional[int]:
        if self._iterator is None:
            self._iterator = iter(self._supplier())
        # ids claimed by explicit movements after the first draw
        for contact_id in self._iterator:
            if contact_id not in self._claimed:
                return contact_id
        return None
