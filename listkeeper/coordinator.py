#!/usr/bin/env python3
"""
coordinator.py

Workflow coordinator: sequences post-send maintenance, the weekly health
sweep and pre-send validation over the five-list set.

Mutating runs (post-send, weekly sweep) hold one exclusive lock over all five
lists; pre-send validation is read-only and never takes it. Every mutating
run moves Idle -> Running -> Success | PartialSuccess | Failed -> Idle and on
the way back to Idle releases the lock, writes the audit record and sends
exactly one notification, in that order.

Background mode runs a small worker pool over a priority queue ordered by
each item's not_before time, plus an hourly scheduler tick that enqueues due
post-send runs and the weekly sweep.
"""

import itertools
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .advisory import AdvisoryClient, rule_based_rebalancing_plan, rule_based_suppression_plan
from .audit import AuditLogWriter
from .balance import equal_targets, state_deviation, state_is_balanced
from .config import EngineConfig
from .engine import ExecutionEngine
from .errors import ListkeeperError, LockContentionError, NotYetEligibleError, RemoteStoreError
from .ledger import MembershipLedger
from .list_store import ListStore
from .models import (
    ALL_LISTS, APPLIED, CAMPAIGN_LISTS, FAILED, CANCELLED, ListHandle, MaintenanceRun, RebalancingPlan,
    RunStatus, SuppressionEntry, SuppressionPlan, ValidatedPlan, ValidationReport, Workflow,
)
from .notifications import TeamsNotifier
from .retry import RetryPolicy
from .state_cache import StateCache, utcnow
from .validator import PlanValidator

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
CANCELLED_BEFORE_START = "cancelled"


class RunAborted(ListkeeperError):
    """The run cannot proceed and no mutation has been attempted"""


@dataclass
class SendRecord:
    send_id: str
    campaign_id: str
    list_handle: ListHandle
    sent_at: datetime
    queued: bool = False
    maintained: bool = False


@dataclass(order=True)
class WorkItem:
    not_before: datetime
    seq: int
    run_id: str = field(compare=False)
    workflow: Workflow = field(compare=False)
    send_id: Optional[str] = field(default=None, compare=False)
    lock_attempts: int = field(default=0, compare=False)


def resolve_run_status(run: MaintenanceRun) -> RunStatus:
    """Terminal status from operation results and validator rejections"""
    results = run.operation_results
    error_rejections = [r for r in run.rejections if r.is_error]
    if not results and not error_rejections:
        return RunStatus.SUCCESS
    applied = sum(1 for r in results if r.status == APPLIED)
    if applied == 0:
        return RunStatus.FAILED
    if all(r.status == APPLIED for r in results) and not error_rejections:
        return RunStatus.SUCCESS
    return RunStatus.PARTIAL_SUCCESS


class WorkflowCoordinator:
    """Owns the five-list lock and the lifecycle of every MaintenanceRun"""

    def __init__(self, store: ListStore, ledger: Optional[MembershipLedger] = None,
                 cache: Optional[StateCache] = None, advisory: Optional[AdvisoryClient] = None,
                 audit: Optional[AuditLogWriter] = None, notifier: Optional[TeamsNotifier] = None,
                 engine_config: Optional[EngineConfig] = None, clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = engine_config or EngineConfig()
        self.clock = clock
        self.store = store
        self.ledger = ledger or MembershipLedger(clock=clock)
        self.cache = cache or StateCache(self.config.cache_freshness_seconds, clock=clock)
        self.advisory = advisory
        self.audit = audit
        self.notifier = notifier

        self.retry = RetryPolicy.from_config(self.config, sleep=sleep)
        self.engine = ExecutionEngine(store, self.ledger, self.cache, self.config, self.retry)
        self.validator = PlanValidator(self.ledger, self.config)

        self._list_lock = threading.Lock()
        self._lock_holder: Optional[str] = None

        self._registry_lock = threading.Lock()
        self._sends: Dict[str, SendRecord] = {}
        self._statuses: Dict[str, str] = {}
        self._runs: Dict[str, MaintenanceRun] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._follow_ups: List[SuppressionEntry] = []
        self._last_sweep_at: Optional[datetime] = None

        self._queue: "queue.PriorityQueue[WorkItem]" = queue.PriorityQueue()
        self._seq = itertools.count()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # =========================================================================
    # 🔒 FIVE-LIST LOCK
    # =========================================================================

    def _acquire_lock(self, run_id: str):
        if not self._list_lock.acquire(blocking=False):
            raise LockContentionError(self._lock_holder)
        self._lock_holder = run_id
        logger.debug(f"🔒 Lock acquired by {run_id}")

    def _release_lock(self, run_id: str):
        self._lock_holder = None
        self._list_lock.release()
        logger.debug(f"🔓 Lock released by {run_id}")

    @property
    def lock_holder(self) -> Optional[str]:
        return self._lock_holder

    # =========================================================================
    # 🚀 STARTUP
    # =========================================================================

    def bootstrap(self, reconcile: bool = True):
        """Seed the ledger: audited suppressions, then optionally a full remote read"""
        if self.audit is not None:
            suppressed = self.audit.suppressed_contact_ids()
            self.ledger.mark_suppressed(suppressed)
            logger.info(f"🗄️ Seeded {len(suppressed)} suppressed contacts from audit history")
        if reconcile:
            self._acquire_lock("bootstrap")
            try:
                self._reconcile_ledger()
            finally:
                self._release_lock("bootstrap")

    # =========================================================================
    # 📨 TRIGGERS
    # =========================================================================

    def register_send(self, send_id: str, campaign_id: str, list_handle, sent_at: Optional[datetime] = None) -> SendRecord:
        handle = ListHandle.parse(list_handle)
        if handle is None or not handle.is_campaign:
            raise ValueError(f"Send {send_id} must target a campaign list, got {list_handle!r}")
        record = SendRecord(send_id, str(campaign_id), handle, sent_at or self.clock())
        with self._registry_lock:
            self._sends[send_id] = record
        logger.info(f"📬 Registered send {send_id} (campaign {campaign_id}) to {handle.value}")
        return record

    def eligible_at(self, send_id: str) -> datetime:
        return self._get_send(send_id).sent_at + timedelta(hours=self.config.post_send_min_hours)

    def trigger_post_send_maintenance(self, send_id: str) -> str:
        """Queue post-send maintenance; it waits in the queue until the send's gate opens"""
        send = self._get_send(send_id)
        run_id = self._new_run_id(Workflow.POST_SEND)
        not_before = max(self.clock(), self.eligible_at(send_id))
        with self._registry_lock:
            send.queued = True
        self._enqueue(WorkItem(not_before, next(self._seq), run_id, Workflow.POST_SEND, send_id))
        if not_before > self.clock():
            logger.info(f"⏳ Post-send run {run_id} for {send_id} queued until {not_before.isoformat()}")
        return run_id

    def trigger_weekly_sweep(self) -> str:
        run_id = self._new_run_id(Workflow.WEEKLY_SWEEP)
        self._enqueue(WorkItem(self.clock(), next(self._seq), run_id, Workflow.WEEKLY_SWEEP))
        return run_id

    def _enqueue(self, item: WorkItem):
        with self._registry_lock:
            self._statuses[item.run_id] = QUEUED
            self._cancel_events.setdefault(item.run_id, threading.Event())
        self._queue.put(item)
        logger.info(f"📥 Queued {item.workflow.value} run {item.run_id}")

    def _get_send(self, send_id: str) -> SendRecord:
        with self._registry_lock:
            send = self._sends.get(send_id)
        if send is None:
            raise KeyError(f"Unknown send: {send_id}")
        return send

    def _new_run_id(self, workflow: Workflow) -> str:
        prefix = "ps" if workflow == Workflow.POST_SEND else "ws"
        return f"{prefix}-{self.clock().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"

    # =========================================================================
    # 📊 STATUS & CANCELLATION
    # =========================================================================

    def get_run_status(self, run_id: str) -> Optional[str]:
        with self._registry_lock:
            return self._statuses.get(run_id)

    def get_run(self, run_id: str) -> Optional[MaintenanceRun]:
        with self._registry_lock:
            return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Cooperative: the engine stops before its next per-contact operation"""
        with self._registry_lock:
            event = self._cancel_events.get(run_id)
            status = self._statuses.get(run_id)
        if event is None or status not in (QUEUED, RUNNING):
            return False
        event.set()
        logger.warning(f"🛑 Cancellation requested for run {run_id}")
        return True

    def pending_follow_ups(self) -> List[SuppressionEntry]:
        with self._registry_lock:
            return list(self._follow_ups)

    # =========================================================================
    # 🔁 RUN LIFECYCLE
    # =========================================================================

    def _cancel_event(self, run_id: str) -> threading.Event:
        with self._registry_lock:
            return self._cancel_events.setdefault(run_id, threading.Event())

    def _set_status(self, run_id: str, status: str):
        with self._registry_lock:
            self._statuses[run_id] = status

    def _run_mutating(self, workflow: Workflow, run_id: str, trigger: str,
                      body: Callable[[MaintenanceRun, threading.Event], None]) -> MaintenanceRun:
        self._acquire_lock(run_id)
        run = MaintenanceRun(run_id=run_id, workflow=workflow, started_at=self.clock(), trigger=trigger)
        cancel_event = self._cancel_event(run_id)
        self._set_status(run_id, RUNNING)
        logger.info(f"🚀 Starting {workflow.value} run {run_id} ({trigger})")

        interrupted = False
        try:
            try:
                body(run, cancel_event)
            except RunAborted as e:
                run.abort_reason = str(e)
                logger.error(f"❌ Run {run_id} aborted before mutation: {e}")
            except Exception as e:
                logger.exception(f"❌ Run {run_id} stopped by unexpected error")
                if any(r.status == APPLIED for r in run.operation_results):
                    interrupted = True
                    run.notes.append(f"Stopped by unexpected error after partial mutation: {e}")
                else:
                    run.abort_reason = f"unexpected error: {e}"

            run.cancelled = cancel_event.is_set()
            if run.abort_reason:
                status = RunStatus.FAILED
            elif interrupted:
                # some mutations applied, later steps skipped
                status = RunStatus.PARTIAL_SUCCESS
            else:
                status = resolve_run_status(run)
            run.finalize(status, self.clock())
        finally:
            self._release_lock(run_id)

        self._record(run)
        return run

    def _record(self, run: MaintenanceRun):
        """Terminal bookkeeping after the lock is released: registry, audit, notification"""
        with self._registry_lock:
            self._runs[run.run_id] = run
            self._statuses[run.run_id] = run.status.value

        counts = run.summary_counts()
        logger.info(f"🏁 Run {run.run_id} finished {run.status.value}: " +
                    ", ".join(f"{k}={v}" for k, v in counts.items()))

        if self.audit is not None:
            try:
                self.audit.write_run(run)
            except Exception as e:
                logger.error(f"❌ Failed to audit run {run.run_id}: {e}")
                if self.notifier is not None:
                    self.notifier.add_error(f"Audit write failed for run {run.run_id}", {"error": str(e)})

        if self.notifier is not None:
            self.notifier.send_run_summary(run)

    def _record_unstarted_failure(self, workflow: Workflow, run_id: str, trigger: str, reason: str) -> MaintenanceRun:
        run = MaintenanceRun(run_id=run_id, workflow=workflow, started_at=self.clock(), trigger=trigger,
                             abort_reason=reason)
        run.finalize(RunStatus.FAILED, self.clock())
        self._record(run)
        return run

    # =========================================================================
    # 📸 SHARED STEPS
    # =========================================================================

    def _snapshot_before(self, run: MaintenanceRun) -> Dict[ListHandle, int]:
        try:
            before = self.engine.snapshot(ALL_LISTS, use_cache=False)
        except RemoteStoreError as e:
            raise RunAborted(f"before-state snapshot failed: {e}")
        run.before_state = _named(before)
        run.deviation_before = state_deviation(before)
        logger.info(f"📸 Before: {run.before_state} (deviation {run.deviation_before:.1f}%)")
        return before

    def _snapshot_after(self, run: MaintenanceRun):
        try:
            after = self.engine.snapshot(ALL_LISTS, use_cache=False)
        except RemoteStoreError as e:
            run.notes.append(f"After-state snapshot unavailable: {e}")
            logger.warning(f"⚠️ After-state snapshot failed for {run.run_id}: {e}")
            return
        run.after_state = _named(after)
        run.deviation_after = state_deviation(after)
        logger.info(f"📸 After: {run.after_state} (deviation {run.deviation_after:.1f}%)")

    def _take_follow_ups(self) -> List[SuppressionEntry]:
        with self._registry_lock:
            entries, self._follow_ups = self._follow_ups, []
        return entries

    def _queue_follow_ups(self, validated: ValidatedPlan, results):
        entries = [r.entry for r in validated.deferred]
        entries += [r.entry for r in results if r.operation == "suppress" and r.status in (FAILED, CANCELLED)]
        if not entries:
            return
        with self._registry_lock:
            self._follow_ups.extend(entries)
        logger.info(f"📌 {len(entries)} suppressions queued for follow-up")

    def _apply_suppression(self, run: MaintenanceRun, plan: SuppressionPlan, state: Dict,
                           cancel_event: threading.Event):
        follow_ups = self._take_follow_ups()
        if follow_ups:
            plan = SuppressionPlan(entries=follow_ups + list(plan.entries), source=plan.source,
                                   summary=plan.summary, confidence=plan.confidence)
            run.notes.append(f"{len(follow_ups)} follow-up suppressions re-validated")

        validated = self.validator.validate_suppression(plan, state)
        run.suppression_plan = validated
        if validated.truncated_for_safety:
            run.notes.append(f"{len(validated.deferred)} suppressions deferred by the safety cap")
        result = self.engine.execute_suppression(validated, cancel_event)
        run.operation_results.extend(result.results)
        self._queue_follow_ups(validated, result.results)

    def _rebalance_if_needed(self, run: MaintenanceRun, cancel_event: threading.Event):
        try:
            counts = self.engine.snapshot(CAMPAIGN_LISTS, use_cache=True)
        except RemoteStoreError as e:
            run.notes.append(f"Balance check skipped: {e}")
            logger.warning(f"⚠️ Could not read campaign sizes for balance check: {e}")
            return

        if state_is_balanced(counts, self.config.balance_tolerance_pct):
            logger.info(f"⚖️ Campaign lists balanced ({state_deviation(counts):.1f}%)")
            return

        run.rebalance_triggered = True
        logger.warning(f"⚖️ Campaign lists out of tolerance ({state_deviation(counts):.1f}% > "
                       f"{self.config.balance_tolerance_pct}%) - requesting rebalancing plan")
        plan = self._rebalancing_plan(run, counts)
        validated = self.validator.validate_rebalancing(plan, counts)
        run.rebalancing_plan = validated
        if validated.deficit:
            run.notes.append(f"Backfill short by {validated.deficit} contacts")
        result = self.engine.execute_rebalancing(validated, cancel_event)
        run.operation_results.extend(result.results)

    def _rebalancing_plan(self, run: MaintenanceRun, counts: Dict[ListHandle, int]) -> RebalancingPlan:
        if self.advisory is not None:
            outcome = self.advisory.request_rebalancing_plan({
                "listSizes": _named(counts),
                "targetCounts": _named(equal_targets(counts)),
                "tolerancePct": self.config.balance_tolerance_pct,
                "availableBackfill": len(self.ledger.backfill_candidates()),
                "suppressedCount": len(self.ledger.suppressed_ids()),
                "preserveFifo": True,
            })
            if outcome.ok:
                return outcome.plan
            run.notes.append(f"Advisory rebalancing {outcome.kind}: {outcome.error[:200]}")
        run.used_fallback = True
        return rule_based_rebalancing_plan()

    # =========================================================================
    # 📬 POST-SEND MAINTENANCE
    # =========================================================================

    def run_post_send_maintenance(self, send_id: str, run_id: Optional[str] = None) -> MaintenanceRun:
        """
        Synchronous post-send maintenance.

        Raises:
            NotYetEligibleError: the minimum elapsed time has not passed
            LockContentionError: another mutating run holds the lock
        """
        send = self._get_send(send_id)
        eligible_at = self.eligible_at(send_id)
        if self.clock() < eligible_at:
            raise NotYetEligibleError(send_id, eligible_at)

        run = self._run_mutating(Workflow.POST_SEND, run_id or self._new_run_id(Workflow.POST_SEND),
                                 f"send {send_id}", lambda r, c: self._post_send_body(r, c, send))
        with self._registry_lock:
            send.queued = False
            send.maintained = run.status != RunStatus.FAILED
        return run

    def _post_send_body(self, run: MaintenanceRun, cancel_event: threading.Event, send: SendRecord):
        before = self._snapshot_before(run)

        try:
            bounces = self.retry.call(lambda: self.store.fetch_bounce_events(send.campaign_id),
                                      f"bounce events for {send.campaign_id}")
        except RemoteStoreError as e:
            raise RunAborted(f"bounce events unavailable: {e}")

        plan = None
        if self.advisory is not None:
            outcome = self.advisory.request_suppression_plan({
                "campaignId": send.campaign_id,
                "list": send.list_handle.value,
                "listSizes": run.before_state,
                "bounces": [{
                    "contactId": b.contact_id,
                    "email": b.email,
                    "type": b.bounce_type,
                    "error": b.error,
                } for b in bounces],
            })
            if outcome.ok:
                plan = outcome.plan
            else:
                run.notes.append(f"Advisory suppression {outcome.kind}: {outcome.error[:200]}")
        if plan is None:
            run.used_fallback = True
            plan = rule_based_suppression_plan(bounces)

        self._apply_suppression(run, plan, before, cancel_event)
        self._rebalance_if_needed(run, cancel_event)
        self._snapshot_after(run)

    # =========================================================================
    # 🩺 WEEKLY SWEEP
    # =========================================================================

    def run_weekly_sweep(self, run_id: Optional[str] = None) -> MaintenanceRun:
        """
        Synchronous weekly sweep.

        Raises:
            LockContentionError: another mutating run holds the lock
        """
        run = self._run_mutating(Workflow.WEEKLY_SWEEP, run_id or self._new_run_id(Workflow.WEEKLY_SWEEP),
                                 "weekly sweep", self._sweep_body)
        with self._registry_lock:
            self._last_sweep_at = run.started_at
        return run

    def _reconcile_ledger(self) -> Dict[str, List[int]]:
        members = {}
        for handle in ALL_LISTS:
            members[handle] = self.retry.call(lambda h=handle: self.store.fetch_all_members(h),
                                              f"members of {handle.value}")
        return self.ledger.reconcile(members)

    def _sweep_body(self, run: MaintenanceRun, cancel_event: threading.Event):
        before = self._snapshot_before(run)

        try:
            anomalies = self._reconcile_ledger()
        except RemoteStoreError as e:
            raise RunAborted(f"ledger reconciliation failed: {e}")

        for kind in ("dual_membership", "suppressed_in_campaign"):
            ids = anomalies[kind]
            if ids:
                message = f"{len(ids)} contacts with {kind.replace('_', ' ')}"
                run.notes.append(f"{message}: {ids[:20]}")
                if self.notifier is not None:
                    self.notifier.add_warning(message, {"contact_ids": ids[:20]})
        if anomalies["resolved_orphans"]:
            run.notes.append(f"{len(anomalies['resolved_orphans'])} orphaned contacts reconciled")

        self._apply_suppression(run, SuppressionPlan(source="follow_up"), before, cancel_event)
        self._rebalance_if_needed(run, cancel_event)
        self._snapshot_after(run)

    # =========================================================================
    # 🛫 PRE-SEND VALIDATION (read-only, lock-free)
    # =========================================================================

    def validate_pre_send(self, list_handle, expected_count: int) -> ValidationReport:
        handle = ListHandle.parse(list_handle)
        if handle is None:
            raise ValueError(f"Unknown list: {list_handle!r}")

        issues = []
        degraded = False
        actual = self._read_only_count(handle)
        if actual is None:
            stale = self.cache.get_stale(handle)
            if stale is not None:
                actual = stale.size
                degraded = True
                issues.append({"severity": "warning",
                               "message": f"List store unavailable - using cached count from "
                                          f"{stale.last_synced_at.isoformat()}"})
            else:
                issues.append({"severity": "error", "message": "List store unavailable and no cached count"})

        if actual is not None:
            if expected_count:
                diff_pct = abs(actual - expected_count) / expected_count * 100.0
            else:
                diff_pct = 0.0 if actual == 0 else 100.0
            if diff_pct > self.config.pre_send_count_tolerance_pct:
                issues.append({"severity": "error",
                               "message": f"Count {actual} differs from expected {expected_count} "
                                          f"by {diff_pct:.1f}%"})

        deviation_pct = None
        if handle.is_campaign:
            members = self.ledger.members_of(handle)
            suppressed = [cid for cid in members if self.ledger.is_suppressed(cid)]
            if suppressed:
                issues.append({"severity": "error",
                               "message": f"{len(suppressed)} suppressed contacts still in {handle.value}"})
            orphaned = self.ledger.orphaned_ids()
            if orphaned:
                issues.append({"severity": "info",
                               "message": f"{len(orphaned)} orphaned contacts awaiting reconciliation"})

            counts = self._cached_campaign_counts()
            if counts is not None:
                deviation_pct = state_deviation(counts)
                if not state_is_balanced(counts, self.config.balance_tolerance_pct):
                    issues.append({"severity": "warning",
                                   "message": f"Campaign lists out of balance ({deviation_pct:.1f}%)"})

        if any(i["severity"] == "error" for i in issues):
            status = "blocked"
        elif any(i["severity"] == "warning" for i in issues):
            status = "warning"
        else:
            status = "ready"

        report = ValidationReport(handle, expected_count, actual, status, degraded, issues,
                                  deviation_pct, self.clock())
        logger.info(f"🛫 Pre-send check for {handle.value}: {status.upper()} "
                    f"(expected {expected_count}, actual {actual})")
        return report

    def _read_only_count(self, handle: ListHandle) -> Optional[int]:
        cached = self.cache.get(handle)
        if cached is not None:
            return cached.size
        try:
            return self.store.get_count(handle)
        except RemoteStoreError as e:
            logger.warning(f"⚠️ Pre-send count for {handle.value} unavailable: {e}")
            return None

    def _cached_campaign_counts(self) -> Optional[Dict[ListHandle, int]]:
        counts = {}
        for handle in CAMPAIGN_LISTS:
            entry = self.cache.get(handle) or self.cache.get_stale(handle)
            if entry is None:
                return None
            counts[handle] = entry.size
        return counts

    # =========================================================================
    # 👷 WORKERS & SCHEDULER
    # =========================================================================

    def start(self, workers: Optional[int] = None, scheduler: bool = True):
        if self._threads:
            raise RuntimeError("Coordinator already started")
        self._stop.clear()
        count = workers or self.config.worker_count
        for i in range(count):
            thread = threading.Thread(target=self._worker_loop, name=f"lk-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        if scheduler:
            thread = threading.Thread(target=self._scheduler_loop, name="lk-scheduler", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"👷 Started {count} workers{' and the scheduler' if scheduler else ''}")

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("🛑 Coordinator stopped")

    def wait_for(self, run_id: str, timeout: float = 30.0) -> Optional[str]:
        """Block until a queued run reaches a terminal status"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = self.get_run_status(run_id)
            if status not in (QUEUED, RUNNING):
                return status
            time.sleep(0.01)
        return self.get_run_status(run_id)

    def scheduler_tick(self) -> List[str]:
        """Enqueue due post-send runs and, when due, the weekly sweep"""
        now = self.clock()
        run_ids = []
        with self._registry_lock:
            due = [s.send_id for s in self._sends.values()
                   if not s.queued and not s.maintained
                   and now >= s.sent_at + timedelta(hours=self.config.post_send_min_hours)]
            last_sweep = self._last_sweep_at
            sweep_pending = any(status in (QUEUED, RUNNING) for run_id, status in self._statuses.items()
                                if run_id.startswith("ws-"))
        for send_id in due:
            run_ids.append(self.trigger_post_send_maintenance(send_id))

        interval = timedelta(hours=self.config.weekly_sweep_interval_hours)
        if not sweep_pending and (last_sweep is None or now - last_sweep >= interval):
            run_ids.append(self.trigger_weekly_sweep())
        return run_ids

    def _scheduler_loop(self):
        while not self._stop.is_set():
            try:
                self.scheduler_tick()
            except Exception as e:
                logger.error(f"❌ Scheduler tick failed: {e}")
            self._stop.wait(self.config.scheduler_poll_seconds)

    def _worker_loop(self):
        while not self._stop.is_set():
            try:
                item = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                wait = (item.not_before - self.clock()).total_seconds()
                if wait > 0:
                    self._queue.put(item)
                    self._stop.wait(min(wait, 1.0))
                    continue
                self.process(item)
            except Exception as e:
                logger.exception(f"❌ Worker failed on run {item.run_id}: {e}")
            finally:
                self._queue.task_done()

    def process(self, item: WorkItem):
        """Run one queued work item now, requeueing on contention or an unopened gate"""
        if self._cancel_event(item.run_id).is_set():
            self._set_status(item.run_id, CANCELLED_BEFORE_START)
            if item.send_id is not None:
                with self._registry_lock:
                    self._sends[item.send_id].queued = False
            logger.info(f"🛑 Run {item.run_id} cancelled before it started")
            return

        try:
            if item.workflow == Workflow.POST_SEND:
                self.run_post_send_maintenance(item.send_id, run_id=item.run_id)
            else:
                self.run_weekly_sweep(run_id=item.run_id)
        except NotYetEligibleError as e:
            logger.info(f"⏳ {e} - requeued")
            item.not_before = e.eligible_at
            item.seq = next(self._seq)
            self._queue.put(item)
        except LockContentionError as e:
            item.lock_attempts += 1
            if item.lock_attempts >= self.config.lock_retry_limit:
                trigger = f"send {item.send_id}" if item.send_id else "weekly sweep"
                self._record_unstarted_failure(item.workflow, item.run_id, trigger,
                                               f"lock contention after {item.lock_attempts} attempts: {e}")
                if item.send_id is not None:
                    with self._registry_lock:
                        self._sends[item.send_id].queued = False
                return
            logger.info(f"🔒 {e} - run {item.run_id} requeued in {self.config.requeue_delay_seconds:.0f}s")
            item.not_before = self.clock() + timedelta(seconds=self.config.requeue_delay_seconds)
            item.seq = next(self._seq)
            self._queue.put(item)


def _named(state: Dict[ListHandle, int]) -> Dict[str, int]:
    return {handle.value: count for handle, count in state.items()}
