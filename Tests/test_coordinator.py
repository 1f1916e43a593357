from datetime import timedelta
from unittest.mock import MagicMock, Mock

import pytest

from listkeeper.advisory import OK, AdvisoryClient, AdvisoryOutcome
from listkeeper.audit import AuditLogWriter
from listkeeper.config import EngineConfig
from listkeeper.coordinator import QUEUED, WorkflowCoordinator, resolve_run_status
from listkeeper.errors import LockContentionError, NotYetEligibleError
from listkeeper.models import (
    APPLIED, FAILED, ListHandle, MaintenanceRun, Movement, OperationResult, RebalancingPlan, Rejection,
    RunStatus, SuppressionEntry, SuppressionPlan, ValidatedPlan, Workflow,
)

from fakes import build_universe, hard_bounces, no_sleep

C1, C2, C3 = ListHandle.CAMPAIGN_1, ListHandle.CAMPAIGN_2, ListHandle.CAMPAIGN_3
SUPPRESSION = ListHandle.SUPPRESSION


@pytest.fixture
def audit():
    writer = AuditLogWriter(":memory:")
    yield writer
    writer.close()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def make_coordinator(store, clock, audit, notifier):
    def factory(advisory=None, **overrides):
        engine_config = EngineConfig(show_progress=False, **overrides)
        return WorkflowCoordinator(store, advisory=advisory, audit=audit, notifier=notifier,
                                   engine_config=engine_config, clock=clock, sleep=no_sleep)
    return factory


def balanced_universe(store, size=30):
    build_universe(store, {C1: range(1, size + 1), C2: range(size + 1, 2 * size + 1),
                           C3: range(2 * size + 1, 3 * size + 1)})


def register_due_send(coordinator, clock, send_id="s-1", campaign_id="cmp-1", list_handle="campaign_1"):
    return coordinator.register_send(send_id, campaign_id, list_handle, sent_at=clock() - timedelta(hours=25))


def advisory_returning(suppression_plan=None, rebalancing_plan=None):
    advisory = Mock()
    advisory.request_suppression_plan.return_value = AdvisoryOutcome(OK, suppression_plan or SuppressionPlan())
    advisory.request_rebalancing_plan.return_value = AdvisoryOutcome(OK, rebalancing_plan or RebalancingPlan())
    return advisory


class TestRunStatus:
    def run_with(self, results, rejections=()):
        run = MaintenanceRun(run_id="r", workflow=Workflow.POST_SEND, started_at=None)
        run.operation_results = list(results)
        run.suppression_plan = ValidatedPlan(kind="suppression", rejected=list(rejections))
        return run

    def test_nothing_to_do_is_success(self):
        assert resolve_run_status(self.run_with([])) == RunStatus.SUCCESS

    def test_no_ops_do_not_degrade_status(self):
        run = self.run_with([], [Rejection(SuppressionEntry(1, "x", {}), "already_suppressed")])
        assert resolve_run_status(run) == RunStatus.SUCCESS

    def test_error_rejection_with_nothing_applied_fails(self):
        run = self.run_with([], [Rejection(SuppressionEntry(1, "x", {}), "unknown_contact")])
        assert resolve_run_status(run) == RunStatus.FAILED

    def test_mixed_results_are_partial(self):
        run = self.run_with([OperationResult(1, "suppress", APPLIED), OperationResult(2, "suppress", FAILED)])
        assert resolve_run_status(run) == RunStatus.PARTIAL_SUCCESS


class TestPostSendMaintenance:
    def test_hard_bounces_suppressed_and_rebalance_triggered(self, store, clock, audit, notifier, make_coordinator):
        build_universe(store, {C1: range(1, 1001), C2: range(1001, 2041), C3: range(2041, 3120)})
        store.bounces["cmp-1"] = hard_bounces("cmp-1", range(1, 246)) + hard_bounces("cmp-1", [300], "soft")
        coordinator = make_coordinator()
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.status == RunStatus.SUCCESS
        assert run.before_state["campaign_1"] == 1000
        assert run.after_state["campaign_1"] == 755
        assert run.after_state["suppression"] == 245
        assert run.rebalance_triggered is True
        assert run.used_fallback is True
        assert 300 in store.members[C1]
        assert audit.count_suppression_rows() == 245
        assert notifier.send_run_summary.call_count == 1
        assert coordinator.lock_holder is None

    def test_failed_movement_gives_partial_success(self, store, clock, audit, make_coordinator):
        build_universe(store, {C1: range(1, 26), C2: range(26, 31), C3: range(31, 41)})
        movements = [Movement(to_list="campaign_2", from_list="campaign_1", contact_id=cid) for cid in range(1, 9)]
        movements += [Movement(to_list="campaign_3", from_list="campaign_1", contact_id=cid) for cid in (9, 10)]
        store.fail_always("add", C2, 5)
        coordinator = make_coordinator(advisory=advisory_returning(rebalancing_plan=RebalancingPlan(movements=movements)))
        coordinator.bootstrap()
        register_due_send(coordinator, clock, campaign_id="cmp-2")

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.status == RunStatus.PARTIAL_SUCCESS
        assert run.used_fallback is False
        counts = run.summary_counts()
        assert counts["rebalanced"] == 9
        assert counts["failed"] == 1
        assert 5 in store.members[C1] and 5 not in store.members[C2]
        assert coordinator.lock_holder is None
        assert not coordinator._list_lock.locked()
        assert audit.get_run(run.run_id)["status"] == "partial_success"

    def test_advisory_timeout_falls_back_to_hard_bounces(self, store, clock, audit, make_coordinator):
        balanced_universe(store)
        store.bounces["cmp-1"] = hard_bounces("cmp-1", [2, 3])
        coordinator = make_coordinator(advisory=AdvisoryClient(url="", session=Mock()))
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.used_fallback is True
        assert any("timeout" in note for note in run.notes)
        assert sorted(store.members[SUPPRESSION]) == [2, 3]
        assert audit.get_run(run.run_id)["used_fallback"] is True
        assert audit.list_runs()[0]["used_fallback"] is True

    def test_rerun_is_idempotent(self, store, clock, audit, make_coordinator):
        balanced_universe(store)
        store.bounces["cmp-1"] = hard_bounces("cmp-1", [1, 31, 61])
        coordinator = make_coordinator()
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        first = coordinator.run_post_send_maintenance("s-1")
        mutations = len(store.mutations())
        second = coordinator.run_post_send_maintenance("s-1")

        assert first.status == RunStatus.SUCCESS
        assert second.status == RunStatus.SUCCESS
        assert second.rebalance_triggered is False
        assert len(store.mutations()) == mutations
        assert [r.reason for r in second.rejections] == ["already_suppressed"] * 3
        assert audit.count_suppression_rows() == 3
        assert len(audit.list_runs()) == 2

    def test_not_yet_eligible_is_refused_without_mutation(self, store, clock, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        coordinator.register_send("s-1", "cmp-1", "campaign_1", sent_at=clock())

        with pytest.raises(NotYetEligibleError) as exc:
            coordinator.run_post_send_maintenance("s-1")
        assert exc.value.eligible_at == clock() + timedelta(hours=24)
        assert store.mutations() == []
        assert coordinator.lock_holder is None

    def test_snapshot_failure_aborts_run(self, store, clock, audit, notifier, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        coordinator.bootstrap()
        register_due_send(coordinator, clock)
        store.unavailable = True

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.status == RunStatus.FAILED
        assert "before-state snapshot failed" in run.abort_reason
        assert store.mutations() == []
        assert notifier.send_run_summary.call_count == 1
        assert audit.get_run(run.run_id)["abort_reason"] == run.abort_reason
        assert coordinator.lock_holder is None

    def test_capped_suppressions_are_followed_up_by_sweep(self, store, clock, make_coordinator):
        # combined campaign size 30 -> at most 3 suppressions per run
        build_universe(store, {C1: range(1, 11), C2: range(11, 21), C3: range(21, 31)})
        store.bounces["cmp-1"] = hard_bounces("cmp-1", range(1, 6))
        coordinator = make_coordinator()
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        run = coordinator.run_post_send_maintenance("s-1")
        assert run.status == RunStatus.PARTIAL_SUCCESS
        assert run.suppression_plan.truncated_for_safety is True
        assert sorted(store.members[SUPPRESSION]) == [1, 2, 3]
        assert [e.contact_id for e in coordinator.pending_follow_ups()] == [4, 5]

        sweep = coordinator.run_weekly_sweep()
        assert sweep.status == RunStatus.SUCCESS
        assert sorted(store.members[SUPPRESSION]) == [1, 2, 3, 4, 5]
        assert coordinator.pending_follow_ups() == []

    def test_unexpected_error_after_mutation_is_partial(self, store, clock, audit, make_coordinator):
        balanced_universe(store)
        store.bounces["cmp-1"] = hard_bounces("cmp-1", range(1, 6))
        advisory = Mock()
        advisory.request_suppression_plan.return_value = AdvisoryOutcome("timeout", error="read timed out")
        advisory.request_rebalancing_plan.side_effect = RuntimeError("advisory client crashed")
        coordinator = make_coordinator(advisory=advisory)
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.status == RunStatus.PARTIAL_SUCCESS
        assert run.abort_reason == ""
        assert run.summary_counts()["suppressed"] == 5
        assert any("advisory client crashed" in note for note in run.notes)
        assert audit.get_run(run.run_id)["status"] == "partial_success"
        assert coordinator.lock_holder is None

    def test_unexpected_error_before_mutation_fails(self, store, clock, make_coordinator):
        balanced_universe(store)
        advisory = Mock()
        advisory.request_suppression_plan.side_effect = RuntimeError("advisory client crashed")
        coordinator = make_coordinator(advisory=advisory)
        coordinator.bootstrap()
        register_due_send(coordinator, clock)

        run = coordinator.run_post_send_maintenance("s-1")

        assert run.status == RunStatus.FAILED
        assert run.abort_reason == "unexpected error: advisory client crashed"
        assert store.mutations() == []

    def test_send_must_target_campaign_list(self, make_coordinator):
        coordinator = make_coordinator()
        with pytest.raises(ValueError):
            coordinator.register_send("s-1", "cmp-1", "master")


class TestWeeklySweep:
    def test_anomalies_are_reported(self, store, notifier, make_coordinator):
        build_universe(store, {C1: range(1, 11), C2: range(11, 21), C3: range(21, 31)}, suppressed=[25])
        store.members[C2].append(4)
        coordinator = make_coordinator()

        run = coordinator.run_weekly_sweep()

        assert run.status == RunStatus.SUCCESS
        assert coordinator.ledger.dual_memberships() == [4]
        assert coordinator.ledger.suppressed_in_campaign() == [25]
        messages = [c.args[0] for c in notifier.add_warning.call_args_list]
        assert messages == ["1 contacts with dual membership", "1 contacts with suppressed in campaign"]
        assert len(run.notes) >= 2
        assert notifier.send_run_summary.call_count == 1

    def test_bootstrap_seeds_suppression_from_audit(self, store, clock, audit, make_coordinator):
        balanced_universe(store)
        run = MaintenanceRun(run_id="ps-old", workflow=Workflow.POST_SEND, started_at=clock())
        run.operation_results = [OperationResult(44, "suppress", APPLIED, SuppressionEntry(44, "hard_bounce", {}))]
        run.finalize(RunStatus.SUCCESS, clock())
        audit.write_run(run)

        coordinator = make_coordinator()
        coordinator.bootstrap(reconcile=False)
        assert coordinator.ledger.is_suppressed(44)


class TestLockAndQueue:
    def test_second_mutating_run_hits_contention(self, store, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        coordinator._acquire_lock("ps-busy")

        with pytest.raises(LockContentionError) as exc:
            coordinator.run_weekly_sweep()
        assert exc.value.holder_run_id == "ps-busy"
        assert store.mutations() == []

    def test_queued_run_requeues_on_contention(self, store, clock, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        run_id = coordinator.trigger_weekly_sweep()
        coordinator._acquire_lock("ps-busy")

        item = coordinator._queue.get_nowait()
        coordinator.process(item)

        requeued = coordinator._queue.get_nowait()
        assert requeued.run_id == run_id
        assert requeued.lock_attempts == 1
        assert requeued.not_before == clock() + timedelta(seconds=300)
        assert coordinator.get_run_status(run_id) == QUEUED

        coordinator._release_lock("ps-busy")
        coordinator.process(requeued)
        assert coordinator.get_run_status(run_id) == "success"

    def test_contention_limit_fails_queued_run(self, store, notifier, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator(lock_retry_limit=2)
        run_id = coordinator.trigger_weekly_sweep()
        coordinator._acquire_lock("ps-busy")

        coordinator.process(coordinator._queue.get_nowait())
        coordinator.process(coordinator._queue.get_nowait())

        assert coordinator.get_run_status(run_id) == "failed"
        assert coordinator.get_run(run_id).abort_reason.startswith("lock contention after 2 attempts")
        assert coordinator._queue.empty()
        assert notifier.send_run_summary.call_count == 1

    def test_gate_requeues_until_eligible(self, store, clock, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        coordinator.bootstrap()
        coordinator.register_send("s-1", "cmp-1", "campaign_1", sent_at=clock())
        run_id = coordinator.trigger_post_send_maintenance("s-1")

        item = coordinator._queue.get_nowait()
        assert item.not_before == clock() + timedelta(hours=24)
        coordinator.process(item)
        assert coordinator.get_run_status(run_id) == QUEUED

        clock.advance(hours=25)
        coordinator.process(coordinator._queue.get_nowait())
        assert coordinator.get_run_status(run_id) == "success"
        assert coordinator._sends["s-1"].maintained is True

    def test_cancel_before_start(self, store, notifier, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        run_id = coordinator.trigger_weekly_sweep()

        assert coordinator.cancel(run_id) is True
        coordinator.process(coordinator._queue.get_nowait())

        assert coordinator.get_run_status(run_id) == "cancelled"
        assert coordinator.get_run(run_id) is None
        assert coordinator.cancel(run_id) is False
        notifier.send_run_summary.assert_not_called()

    def test_workers_drain_queue(self, store, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        coordinator.start(workers=1, scheduler=False)
        try:
            run_id = coordinator.trigger_weekly_sweep()
            assert coordinator.wait_for(run_id, timeout=10) == "success"
        finally:
            coordinator.stop(timeout=2)

    def test_scheduler_tick_enqueues_due_work_once(self, store, clock, make_coordinator):
        balanced_universe(store)
        coordinator = make_coordinator()
        register_due_send(coordinator, clock, send_id="s-old")
        coordinator.register_send("s-new", "cmp-2", "campaign_2", sent_at=clock())

        run_ids = coordinator.scheduler_tick()
        assert sorted(r[:3] for r in run_ids) == ["ps-", "ws-"]
        assert coordinator.scheduler_tick() == []


class TestPreSendValidation:
    def test_ready_without_touching_cache(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        coordinator.bootstrap()

        report = coordinator.validate_pre_send("campaign_1", 10)

        assert report.status == "ready"
        assert report.actual_count == 10
        assert coordinator.cache.get(C1) is None

    def test_count_mismatch_blocks(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        report = coordinator.validate_pre_send("campaign_1", 12)
        assert report.status == "blocked"
        assert "differs from expected 12" in report.issues[0]["message"]

    def test_suppressed_member_blocks(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        coordinator.bootstrap()
        coordinator.ledger.mark_suppressed([3])

        report = coordinator.validate_pre_send("campaign_1", 10)
        assert report.status == "blocked"
        assert any("suppressed contacts still in campaign_1" in i["message"] for i in report.issues)

    def test_stale_cache_is_served_degraded(self, store, clock, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        coordinator.cache.put(C1, 10)
        clock.advance(hours=2)
        store.unavailable = True

        report = coordinator.validate_pre_send("campaign_1", 10)
        assert report.status == "warning"
        assert report.degraded is True
        assert report.actual_count == 10

    def test_unavailable_without_cache_blocks(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        store.unavailable = True

        report = coordinator.validate_pre_send("campaign_1", 10)
        assert report.status == "blocked"
        assert report.actual_count is None

    def test_imbalance_is_a_warning(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        coordinator.cache.put(C1, 10)
        coordinator.cache.put(C2, 10)
        coordinator.cache.put(C3, 14)

        report = coordinator.validate_pre_send("campaign_1", 10)
        assert report.status == "warning"
        assert report.deviation_pct == pytest.approx(23.5, abs=0.1)

    def test_runs_while_lock_is_held(self, store, make_coordinator):
        balanced_universe(store, size=10)
        coordinator = make_coordinator()
        coordinator._acquire_lock("ps-busy")

        report = coordinator.validate_pre_send("master", 30)
        assert report.status == "ready"
        assert coordinator.lock_holder == "ps-busy"
