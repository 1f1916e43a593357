#!/usr/bin/env python3
"""
ledger.py

Membership ledger: best-known mapping of contact -> current list(s).

The remote store is authoritative. The ledger is written by the execution
engine after a confirmed remote mutation and is rebuilt from full remote
reads during the weekly sweep, where the remote always wins. Suppression is
monotonic: a contact once recorded as suppressed stays suppressed here even
if a later remote read no longer shows it.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from .errors import InvariantViolation
from .models import CAMPAIGN_LISTS, ListHandle, MembershipRecord

logger = logging.getLogger(__name__)


class MembershipLedger:
    """Thread-safe local record of list membership"""

    def __init__(self, clock=lambda: datetime.now(timezone.utc)):
        self._clock = clock
        self._memberships: Dict[int, Dict[ListHandle, datetime]] = {}
        self._enrollment: Dict[int, int] = {}  # master FIFO position
        self._next_position = 0
        self._suppressed: Set[int] = set()
        self._orphaned: Set[int] = set()
        self._lock = threading.RLock()

    # =========================================================================
    # 🔍 READS
    # =========================================================================

    def lists_of(self, contact_id: int) -> Set[ListHandle]:
        with self._lock:
            return set(self._memberships.get(contact_id, {}))

    def campaign_lists_of(self, contact_id: int) -> List[ListHandle]:
        lists = self.lists_of(contact_id)
        return [h for h in CAMPAIGN_LISTS if h in lists]

    def campaign_list_of(self, contact_id: int) -> Optional[ListHandle]:
        lists = self.campaign_lists_of(contact_id)
        return lists[0] if lists else None

    def is_member(self, contact_id: int, handle: ListHandle) -> bool:
        with self._lock:
            return handle in self._memberships.get(contact_id, {})

    def is_suppressed(self, contact_id: int) -> bool:
        with self._lock:
            return contact_id in self._suppressed

    def is_known(self, contact_id: int) -> bool:
        lists = self.lists_of(contact_id)
        return ListHandle.MASTER in lists or any(h.is_campaign for h in lists)

    def suppressed_ids(self) -> Set[int]:
        with self._lock:
            return set(self._suppressed)

    def orphaned_ids(self) -> Set[int]:
        with self._lock:
            return set(self._orphaned)

    def members_of(self, handle: ListHandle) -> List[int]:
        """Members of one list, oldest-enrolled first"""
        with self._lock:
            members = [cid for cid, lists in self._memberships.items() if handle in lists]
            return sorted(members, key=self._fifo_key)

    def size(self, handle: ListHandle) -> int:
        with self._lock:
            return sum(1 for lists in self._memberships.values() if handle in lists)

    def records(self) -> List[MembershipRecord]:
        with self._lock:
            return [MembershipRecord(cid, handle, observed)
                    for cid, lists in self._memberships.items()
                    for handle, observed in lists.items()]

    def backfill_candidates(self, exclude: Iterable[int] = ()) -> List[int]:
        """Master contacts free for campaign enrollment, oldest-enrolled first"""
        excluded = set(exclude)
        with self._lock:
            candidates = [
                cid for cid, lists in self._memberships.items()
                if ListHandle.MASTER in lists
                and cid not in self._suppressed
                and cid not in excluded
                and not any(h.is_campaign for h in lists)
            ]
            return sorted(candidates, key=self._fifo_key)

    def dual_memberships(self) -> List[int]:
        with self._lock:
            return sorted(cid for cid, lists in self._memberships.items()
                          if sum(1 for h in lists if h.is_campaign) > 1)

    def suppressed_in_campaign(self) -> List[int]:
        with self._lock:
            return sorted(cid for cid, lists in self._memberships.items()
                          if cid in self._suppressed and any(h.is_campaign for h in lists))

    def _fifo_key(self, contact_id: int):
        return (self._enrollment.get(contact_id, float("inf")), contact_id)

    # =========================================================================
    # ✏️ WRITES - execution engine only, after confirmed remote mutations
    # =========================================================================

    def record_added(self, contact_id: int, handle: ListHandle):
        with self._lock:
            lists = self._memberships.setdefault(contact_id, {})
            if handle.is_campaign:
                if contact_id in self._suppressed:
                    raise InvariantViolation(
                        f"Contact {contact_id} is suppressed and cannot join {handle.value}", contact_id)
                others = [h for h in lists if h.is_campaign and h != handle]
                if others:
                    raise InvariantViolation(
                        f"Contact {contact_id} already belongs to {others[0].value}", contact_id)
            lists[handle] = self._clock()
            if handle == ListHandle.MASTER:
                self._enroll(contact_id)
            if handle == ListHandle.SUPPRESSION:
                self._suppressed.add(contact_id)
            if handle.is_campaign:
                self._orphaned.discard(contact_id)

    def record_removed(self, contact_id: int, handle: ListHandle):
        with self._lock:
            lists = self._memberships.get(contact_id)
            if lists:
                lists.pop(handle, None)

    def record_suppressed(self, contact_id: int):
        """Contact left every campaign list and joined suppression"""
        with self._lock:
            lists = self._memberships.setdefault(contact_id, {})
            for handle in CAMPAIGN_LISTS:
                lists.pop(handle, None)
            lists[ListHandle.SUPPRESSION] = self._clock()
            self._suppressed.add(contact_id)
            self._orphaned.discard(contact_id)

    def mark_suppressed(self, contact_ids: Iterable[int]):
        """Seed the monotonic suppression set, e.g. from audit history"""
        with self._lock:
            self._suppressed.update(int(cid) for cid in contact_ids)

    def flag_orphaned(self, contact_id: int):
        with self._lock:
            self._orphaned.add(contact_id)
        logger.warning(f"⚠️ Contact {contact_id} flagged orphaned - will reconcile on next sweep")

    def _enroll(self, contact_id: int):
        if contact_id not in self._enrollment:
            self._enrollment[contact_id] = self._next_position
            self._next_position += 1

    # =========================================================================
    # 🔄 RECONCILIATION
    # =========================================================================

    def reconcile(self, remote_members: Dict[ListHandle, List[int]]) -> Dict[str, List[int]]:
        """
        Rebuild membership from full remote reads.

        Args:
            remote_members: Every list's member ids, master ordered oldest-first

        Returns:
            Anomalies found in the remote state plus contacts whose ledger
            entry changed.
        """
        observed_at = self._clock()
        with self._lock:
            before = {cid: set(lists) for cid, lists in self._memberships.items()}

            rebuilt: Dict[int, Dict[ListHandle, datetime]] = {}
            for handle, members in remote_members.items():
                for cid in members:
                    rebuilt.setdefault(int(cid), {})[handle] = observed_at

            self._memberships = rebuilt
            self._enrollment = {}
            self._next_position = 0
            for cid in remote_members.get(ListHandle.MASTER, []):
                self._enroll(int(cid))

            self._suppressed.update(int(cid) for cid in remote_members.get(ListHandle.SUPPRESSION, []))
            resolved_orphans = {cid for cid in self._orphaned
                                if any(h.is_campaign for h in rebuilt.get(cid, {}))
                                or cid in self._suppressed}
            self._orphaned -= resolved_orphans

            changed = sorted(cid for cid in set(before) | set(rebuilt)
                             if before.get(cid, set()) != set(rebuilt.get(cid, {})))

        anomalies = {
            "dual_membership": self.dual_memberships(),
            "suppressed_in_campaign": self.suppressed_in_campaign(),
            "changed": changed,
            "resolved_orphans": sorted(resolved_orphans),
        }
        logger.info(f"🔄 Ledger reconciled: {len(changed)} contacts corrected, "
                    f"{len(anomalies['dual_membership'])} dual memberships, "
                    f"{len(anomalies['suppressed_in_campaign'])} suppressed-in-campaign")
        return anomalies
