#!/usr/bin/env python3
"""
engine.py

Execution engine: applies a validated suppression or rebalancing plan to the
remote list store as independent per-contact operations.

Every remote call goes through one RetryPolicy. A failed contact never stops
the others. The membership ledger is written only after a confirmed remote
mutation and the state cache is invalidated for every list touched.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from .config import EngineConfig
from .errors import InvariantViolation, RemoteStoreError
from .ledger import MembershipLedger
from .list_store import ListStore
from .models import (
    ALL_LISTS, APPLIED, CAMPAIGN_LISTS, CANCELLED, FAILED, ORPHANED, ExecutionResult, ListHandle, Movement,
    OperationResult, SuppressionEntry, ValidatedPlan,
)
from .retry import RetryPolicy
from .state_cache import StateCache

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Sole writer of the membership ledger and the state cache"""

    def __init__(self, store: ListStore, ledger: MembershipLedger, cache: StateCache,
                 engine_config: Optional[EngineConfig] = None, retry_policy: Optional[RetryPolicy] = None):
        self.store = store
        self.ledger = ledger
        self.cache = cache
        self.config = engine_config or EngineConfig()
        self.retry = retry_policy or RetryPolicy.from_config(self.config)
        self.compensation_retry = self.retry.with_attempts(self.config.compensation_attempts)

    # =========================================================================
    # 📸 SNAPSHOTS
    # =========================================================================

    def read_count(self, handle: ListHandle, use_cache: bool = True) -> int:
        """List size via the cache; a miss goes to the remote store and refills it"""
        if use_cache:
            cached = self.cache.get(handle)
            if cached is not None:
                return cached.size
        count = self.retry.call(lambda: self.store.get_count(handle), f"count {handle.value}")
        self.cache.put(handle, count)
        return count

    def snapshot(self, handles: Iterable[ListHandle] = ALL_LISTS, use_cache: bool = False) -> Dict[ListHandle, int]:
        """Per-list sizes; raises RemoteStoreError when any list cannot be read"""
        return {handle: self.read_count(handle, use_cache=use_cache) for handle in handles}

    # =========================================================================
    # 🚫 SUPPRESSION
    # =========================================================================

    def execute_suppression(self, plan: ValidatedPlan,
                            cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        logger.info(f"🚫 Executing suppression plan: {len(plan.accepted)} contacts")
        return self._run(plan, "suppression", self._suppress_one, cancel_event)

    def _suppress_one(self, entry: SuppressionEntry) -> OperationResult:
        contact_id = entry.contact_id
        touched: List[ListHandle] = []
        failed_lists = []

        # every campaign list, not just the ledger's: removal of a non-member is a no-op
        for handle in CAMPAIGN_LISTS:
            try:
                self.retry.call(lambda h=handle: self.store.remove_member(h, contact_id),
                                f"remove {contact_id} from {handle.value}")
            except RemoteStoreError as e:
                failed_lists.append(f"{handle.value}: {e}")
                continue
            self.ledger.record_removed(contact_id, handle)
            self._touch(handle, touched)

        if failed_lists:
            logger.error(f"❌ Contact {contact_id} not suppressed - campaign removal failed ({'; '.join(failed_lists)})")
            return OperationResult(contact_id, "suppress", FAILED, entry,
                                   error=f"campaign removal failed: {'; '.join(failed_lists)}",
                                   lists_touched=touched)

        try:
            self.retry.call(lambda: self.store.add_member(ListHandle.SUPPRESSION, contact_id),
                            f"suppress {contact_id}")
        except RemoteStoreError as e:
            logger.error(f"❌ Contact {contact_id} removed from campaigns but not added to suppression: {e}")
            self.ledger.flag_orphaned(contact_id)
            return OperationResult(contact_id, "suppress", FAILED, entry,
                                   error=f"suppression add failed: {e}", lists_touched=touched)

        self.ledger.record_suppressed(contact_id)
        self._touch(ListHandle.SUPPRESSION, touched)
        return OperationResult(contact_id, "suppress", APPLIED, entry, lists_touched=touched)

    # =========================================================================
    # ⚖️ REBALANCING
    # =========================================================================

    def execute_rebalancing(self, plan: ValidatedPlan,
                            cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        logger.info(f"⚖️ Executing rebalancing plan: {len(plan.accepted)} movements")
        return self._run(plan, "rebalancing", self._move_one, cancel_event)

    def _check_move(self, movement: Movement):
        contact_id = movement.contact_id
        if self.ledger.is_suppressed(contact_id):
            raise InvariantViolation(f"Contact {contact_id} is suppressed", contact_id)
        current = self.ledger.campaign_lists_of(contact_id)
        expected = [movement.from_list] if movement.from_list is not None else []
        if current != expected:
            raise InvariantViolation(
                f"Contact {contact_id} is in {[h.value for h in current] or 'no campaign list'}", contact_id)

    def _move_one(self, movement: Movement) -> OperationResult:
        contact_id = movement.contact_id
        source, destination = movement.from_list, movement.to_list
        touched: List[ListHandle] = []

        try:
            self._check_move(movement)
        except InvariantViolation as e:
            logger.error(f"❌ Movement for contact {contact_id} refused: {e}")
            return OperationResult(contact_id, "move", FAILED, movement, error=str(e))

        if source is not None:
            try:
                self.retry.call(lambda: self.store.remove_member(source, contact_id),
                                f"remove {contact_id} from {source.value}")
            except RemoteStoreError as e:
                logger.error(f"❌ Move {contact_id} {source.value} -> {destination.value} failed at removal: {e}")
                return OperationResult(contact_id, "move", FAILED, movement, error=f"source removal failed: {e}")
            self.ledger.record_removed(contact_id, source)
            self._touch(source, touched)

        try:
            self.retry.call(lambda: self.store.add_member(destination, contact_id),
                            f"add {contact_id} to {destination.value}")
        except RemoteStoreError as e:
            if source is None:
                logger.error(f"❌ Backfill of {contact_id} into {destination.value} failed: {e}")
                return OperationResult(contact_id, "move", FAILED, movement,
                                       error=f"destination add failed: {e}", lists_touched=touched)
            return self._compensate(movement, e, touched)

        try:
            self.ledger.record_added(contact_id, destination)
        except InvariantViolation as e:
            logger.error(f"❌ Ledger refused {contact_id} in {destination.value}: {e}")
            self._touch(destination, touched)
            return OperationResult(contact_id, "move", FAILED, movement, error=str(e), lists_touched=touched)
        self._touch(destination, touched)
        return OperationResult(contact_id, "move", APPLIED, movement, lists_touched=touched)

    def _compensate(self, movement: Movement, cause: Exception, touched: List[ListHandle]) -> OperationResult:
        """Re-add to the source after a failed destination add; orphan on failure"""
        contact_id, source = movement.contact_id, movement.from_list
        logger.warning(f"↩️ Add to {movement.to_list.value} failed for {contact_id}, restoring to {source.value}")
        try:
            self.compensation_retry.call(lambda: self.store.add_member(source, contact_id),
                                         f"restore {contact_id} to {source.value}")
        except RemoteStoreError as e:
            self.ledger.flag_orphaned(contact_id)
            return OperationResult(contact_id, "move", ORPHANED, movement,
                                   error=f"destination add failed: {cause}; compensation failed: {e}",
                                   lists_touched=touched)
        self.ledger.record_added(contact_id, source)
        return OperationResult(contact_id, "move", FAILED, movement,
                               error=f"destination add failed: {cause}; restored to {source.value}",
                               lists_touched=touched)

    # =========================================================================
    # 🔧 SHARED
    # =========================================================================

    def _touch(self, handle: ListHandle, touched: List[ListHandle]):
        if handle not in touched:
            touched.append(handle)
        self.cache.invalidate(handle)

    def _run(self, plan: ValidatedPlan, kind: str, operation: Callable,
             cancel_event: Optional[threading.Event]) -> ExecutionResult:
        result = ExecutionResult(kind=kind)
        if not plan.accepted:
            return result

        def guarded(item):
            # checked once per operation, never mid-operation
            if cancel_event is not None and cancel_event.is_set():
                return OperationResult(item.contact_id, _operation_name(kind), CANCELLED, item,
                                       error="run cancelled")
            return operation(item)

        max_workers = max(1, min(self.config.max_in_flight, len(plan.accepted)))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"lk-{kind}") as pool:
            futures = [pool.submit(guarded, item) for item in plan.accepted]
            with tqdm(total=len(futures),
                      desc=f"Applying {kind}",
                      unit="contact",
                      ncols=80,
                      leave=False,
                      disable=not self.config.show_progress,
                      mininterval=2.0) as bar:
                for future in futures:
                    result.results.append(future.result())
                    bar.update(1)

        for op in result.results:
            result.touched_lists.update(op.lists_touched)
        for handle in result.touched_lists:
            self.cache.invalidate(handle)

        logger.info(f"📊 {kind.title()} applied: {result.applied} ok, {result.count(FAILED)} failed, "
                    f"{result.count(ORPHANED)} orphaned, {result.count(CANCELLED)} cancelled")
        return result


def _operation_name(kind: str) -> str:
    return "suppress" if kind == "suppression" else "move"
