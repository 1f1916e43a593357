import pytest

from listkeeper.config import EngineConfig
from listkeeper.models import (
    ListHandle, Movement, RebalancingPlan, SuppressionEntry, SuppressionPlan,
)
from listkeeper.validator import PlanValidator

C1, C2, C3 = ListHandle.CAMPAIGN_1, ListHandle.CAMPAIGN_2, ListHandle.CAMPAIGN_3
LARGE = {C1: 1000, C2: 1000, C3: 1000}


@pytest.fixture
def seeded_ledger(ledger):
    """master 1-20; campaign_1 1-5, campaign_2 6-10, campaign_3 11-15; 21 suppressed"""
    for cid in range(1, 21):
        ledger.record_added(cid, ListHandle.MASTER)
    for cid in range(1, 6):
        ledger.record_added(cid, C1)
    for cid in range(6, 11):
        ledger.record_added(cid, C2)
    for cid in range(11, 16):
        ledger.record_added(cid, C3)
    ledger.record_suppressed(21)
    return ledger


@pytest.fixture
def validator(seeded_ledger, engine_config):
    return PlanValidator(seeded_ledger, engine_config)


def reasons(validated):
    return [r.reason for r in validated.rejected]


class TestSuppressionValidation:
    def test_rejection_reasons(self, validator):
        plan = SuppressionPlan(entries=[
            SuppressionEntry(1, "hard_bounce", {"code": 550}),
            SuppressionEntry(1, "hard_bounce", {"code": 550}),
            SuppressionEntry(21, "hard_bounce", {}),
            SuppressionEntry(999, "hard_bounce", {}),
            SuppressionEntry("abc", "hard_bounce", {}),
            SuppressionEntry(2, "", {}),
            SuppressionEntry(3, "hard_bounce", None),
            SuppressionEntry(True, "hard_bounce", {}),
        ])
        validated = validator.validate_suppression(plan, LARGE)

        assert [e.contact_id for e in validated.accepted] == [1]
        assert reasons(validated) == [
            "duplicate_entry", "already_suppressed", "unknown_contact",
            "malformed", "malformed", "malformed", "malformed",
        ]
        assert validated.truncated_for_safety is False

    def test_already_suppressed_is_a_no_op_not_an_error(self, validator):
        validated = validator.validate_suppression(
            SuppressionPlan(entries=[SuppressionEntry(21, "hard_bounce", {})]), LARGE)
        assert validated.accepted == []
        assert validated.error_rejections == []

    def test_string_ids_are_normalized(self, validator):
        validated = validator.validate_suppression(
            SuppressionPlan(entries=[SuppressionEntry("7", " hard_bounce ", {"x": 1}, email="c7@x.com")]), LARGE)
        entry = validated.accepted[0]
        assert entry.contact_id == 7
        assert entry.reason == "hard_bounce"
        assert entry.email == "c7@x.com"

    def test_cap_defers_extra_entries(self, validator):
        # combined campaign size 30 -> cap 3
        state = {C1: 10, C2: 10, C3: 10}
        plan = SuppressionPlan(entries=[SuppressionEntry(cid, "hard_bounce", {}) for cid in range(1, 6)])
        validated = validator.validate_suppression(plan, state)

        assert [e.contact_id for e in validated.accepted] == [1, 2, 3]
        assert reasons(validated) == ["deferred_cap_exceeded", "deferred_cap_exceeded"]
        assert [r.entry.contact_id for r in validated.deferred] == [4, 5]
        assert validated.truncated_for_safety is True

    def test_validation_does_not_mutate_ledger(self, validator, seeded_ledger):
        before = sorted((r.contact_id, r.list_handle.value) for r in seeded_ledger.records())
        validator.validate_suppression(
            SuppressionPlan(entries=[SuppressionEntry(cid, "hard_bounce", {}) for cid in range(1, 16)]), LARGE)
        after = sorted((r.contact_id, r.list_handle.value) for r in seeded_ledger.records())
        assert before == after
        assert not seeded_ledger.is_suppressed(1)


class TestRebalancingValidation:
    def test_stale_source_is_rejected(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_3", from_list="campaign_2", contact_id=1)])
        validated = validator.validate_rebalancing(plan, LARGE)
        assert validated.accepted == []
        assert reasons(validated) == ["stale_source"]

    def test_move_into_current_list_is_already_member(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_2", from_list="campaign_1", contact_id=6)])
        validated = validator.validate_rebalancing(plan, LARGE)
        assert reasons(validated) == ["already_member"]
        assert validated.error_rejections == []

    def test_suppressed_contact_never_accepted_as_destination(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_1", from_list=None, contact_id=21)])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert reasons(validated) == ["suppressed_contact"]

    def test_valid_move_is_normalized(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="Campaign 3", from_list="campaign_1", contact_id="2")])
        validated = validator.validate_rebalancing(plan, {C1: 1050, C2: 1000, C3: 950})
        move = validated.accepted[0]
        assert (move.contact_id, move.from_list, move.to_list) == (2, C1, C3)

    def test_backfill_picks_oldest_master_contacts(self, validator):
        plan = RebalancingPlan(movements=[
            Movement(to_list="campaign_1", from_list=None, contact_id=None),
            Movement(to_list="campaign_1", from_list="none", contact_id="next_oldest"),
        ])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert [m.contact_id for m in validated.accepted] == [16, 17]
        assert all(m.is_backfill for m in validated.accepted)

    def test_backfill_under_supply_is_partial_fill_with_deficit(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_1") for _ in range(6)])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert [m.contact_id for m in validated.accepted] == [16, 17, 18, 19, 20]
        assert reasons(validated) == ["insufficient_supply"]
        assert validated.deficit == 1

    def test_backfill_skips_contacts_claimed_by_explicit_backfills(self, validator):
        plan = RebalancingPlan(movements=[
            Movement(to_list="campaign_1"),
            Movement(to_list="campaign_2", contact_id=17),
            Movement(to_list="campaign_3"),
        ])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert [m.contact_id for m in validated.accepted] == [16, 17, 18]
        assert validated.rejected == []
        assert validated.deficit == 0

    def test_backfill_of_campaign_member_is_dual_membership(self, validator):
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_2", from_list=None, contact_id=1)])
        validated = validator.validate_rebalancing(plan, {C1: 1000, C2: 900, C3: 1000})
        assert reasons(validated) == ["dual_membership"]

    def test_unspecified_source_contact_is_oldest_in_source(self, validator):
        plan = RebalancingPlan(movements=[
            Movement(to_list="campaign_3", from_list="campaign_1", contact_id="move_from_largest_to_smallest"),
        ])
        validated = validator.validate_rebalancing(plan, {C1: 1050, C2: 1000, C3: 950})
        assert [m.contact_id for m in validated.accepted] == [1]

    def test_overcorrection_guard(self, validator):
        # target 1066.7, band 80: campaign_1 would end 134 above target
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_1", from_list="campaign_2", contact_id=6)])
        validated = validator.validate_rebalancing(plan, {C1: 1200, C2: 1000, C3: 1000})
        assert reasons(validated) == ["overcorrection"]

    def test_overcorrection_accounts_for_earlier_accepted_moves(self, seeded_ledger):
        validator = PlanValidator(seeded_ledger, EngineConfig(show_progress=False))
        # 30 contacts, target 10, band 0.75: second move would put campaign_2 one above target
        plan = RebalancingPlan(movements=[
            Movement(to_list="campaign_2", from_list="campaign_1", contact_id=1),
            Movement(to_list="campaign_2", from_list="campaign_1", contact_id=2),
        ])
        validated = validator.validate_rebalancing(plan, {C1: 12, C2: 9, C3: 9})
        assert [m.contact_id for m in validated.accepted] == [1]
        assert reasons(validated) == ["overcorrection"]

    def test_duplicate_contact_in_plan(self, validator):
        plan = RebalancingPlan(movements=[
            Movement(to_list="campaign_3", from_list="campaign_1", contact_id=1),
            Movement(to_list="campaign_2", from_list="campaign_1", contact_id=1),
        ])
        validated = validator.validate_rebalancing(plan, {C1: 1050, C2: 1000, C3: 950})
        assert reasons(validated) == ["duplicate_entry"]

    def test_movement_cap_defers(self, seeded_ledger):
        validator = PlanValidator(seeded_ledger, EngineConfig(show_progress=False, max_movements_per_run=2))
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_1") for _ in range(3)])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert len(validated.accepted) == 2
        assert reasons(validated) == ["deferred_cap_exceeded"]
        assert validated.truncated_for_safety is True

    @pytest.mark.parametrize("movement", [
        Movement(to_list="master", from_list="campaign_1", contact_id=1),
        Movement(to_list="bogus", from_list="campaign_1", contact_id=1),
        Movement(to_list="campaign_2", from_list="campaign_9", contact_id=1),
        Movement(to_list="campaign_1", from_list="campaign_1", contact_id=1),
        Movement(to_list="campaign_2", from_list="campaign_1", contact_id=-4),
    ])
    def test_malformed_movements(self, validator, movement):
        validated = validator.validate_rebalancing(RebalancingPlan(movements=[movement]), LARGE)
        assert reasons(validated) == ["malformed"]

    def test_dual_membership_observed_remotely(self, ledger, engine_config):
        ledger.reconcile({
            ListHandle.MASTER: [1],
            C1: [1],
            C2: [1],
        })
        validator = PlanValidator(ledger, engine_config)
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_3", from_list="campaign_1", contact_id=1)])
        validated = validator.validate_rebalancing(plan, {C1: 1000, C2: 1000, C3: 950})
        assert reasons(validated) == ["dual_membership"]

    def test_history_suppressed_contact_never_backfilled(self, seeded_ledger, engine_config):
        seeded_ledger.mark_suppressed([16, 17])
        validator = PlanValidator(seeded_ledger, engine_config)
        plan = RebalancingPlan(movements=[Movement(to_list="campaign_1")])
        validated = validator.validate_rebalancing(plan, {C1: 900, C2: 1000, C3: 1000})
        assert [m.contact_id for m in validated.accepted] == [18]
