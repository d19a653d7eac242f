"""
Unit tests for RuleEngine.
"""

import pytest

from paygate.models.schemas.error import PaywallErrorCode
from paygate.models.schemas.experiment import ConfirmableAssignment, Variant, VariantType
from paygate.models.schemas.trigger import TriggerResultType, triggers_by_event
from paygate.repositories.occurrence_repo import OccurrenceRepository
from paygate.services.assignment_store import AssignmentStore
from paygate.services.collaborators import UserAttributesStore
from paygate.services.expression_evaluator import ExpressionEvaluator
from paygate.services.rule_engine import RuleEngine


class TestRuleEngine:
    @pytest.fixture
    def store(self, session_factory):
        return AssignmentStore(session_factory)

    @pytest.fixture
    def rule_engine(self, session_factory, store):
        evaluator = ExpressionEvaluator(session_factory, UserAttributesStore())
        return RuleEngine(store, evaluator)

    @pytest.mark.asyncio
    async def test_event_without_trigger(self, rule_engine, make_event):
        outcome = await rule_engine.evaluate(make_event("checkout"), {}, is_preemptive=False)

        assert outcome.trigger_result.type == TriggerResultType.EVENT_NOT_FOUND
        assert outcome.confirmable_assignment is None

    @pytest.mark.asyncio
    async def test_no_rule_matches(self, rule_engine, make_rule, make_trigger, make_event):
        triggers = triggers_by_event(
            [make_trigger("app_open", [make_rule("r1", "exp1", expression="false")])]
        )

        outcome = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)

        assert outcome.trigger_result.type == TriggerResultType.NO_RULE_MATCH

    @pytest.mark.asyncio
    async def test_first_matching_rule_wins(
        self, rule_engine, store, make_rule, make_trigger, make_event, treatment_variant
    ):
        triggers = triggers_by_event(
            [
                make_trigger(
                    "app_open",
                    [
                        make_rule("r1", "exp1", expression="params.count > 100"),
                        make_rule("r2", "exp2", expression="params.count > 1"),
                        make_rule("r3", "exp3"),
                    ],
                )
            ]
        )
        await store.replace_unconfirmed(
            {"exp1": treatment_variant, "exp2": treatment_variant, "exp3": treatment_variant}
        )

        outcome = await rule_engine.evaluate(
            make_event("app_open", count=5), triggers, is_preemptive=True
        )

        assert outcome.trigger_result.type == TriggerResultType.PAYWALL
        assert outcome.trigger_result.experiment.id == "exp2"
        assert outcome.confirmable_assignment.experiment_id == "exp2"

    @pytest.mark.asyncio
    async def test_malformed_rule_is_skipped(
        self, rule_engine, store, make_rule, make_trigger, make_event, holdout_variant
    ):
        triggers = triggers_by_event(
            [
                make_trigger(
                    "app_open",
                    [make_rule("bad", "exp1", expression="user.plan =="), make_rule("r2", "exp2")],
                )
            ]
        )
        await store.replace_unconfirmed({"exp1": holdout_variant, "exp2": holdout_variant})

        outcome = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)

        assert outcome.trigger_result.experiment.id == "exp2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "expression",
        ["not " * 1200 + "false", "params.count > 'five'"],
    )
    async def test_rule_that_fails_to_evaluate_is_skipped(
        self, rule_engine, store, make_rule, make_trigger, make_event, holdout_variant, expression
    ):
        triggers = triggers_by_event(
            [
                make_trigger(
                    "app_open",
                    [
                        make_rule("r1", "exp1", expression=expression),
                        make_rule("r2", "exp2", expression="true"),
                    ],
                )
            ]
        )
        await store.replace_unconfirmed({"exp1": holdout_variant, "exp2": holdout_variant})

        outcome = await rule_engine.evaluate(
            make_event("app_open", count=5), triggers, is_preemptive=True
        )

        assert outcome.trigger_result.type == TriggerResultType.HOLDOUT
        assert outcome.trigger_result.experiment.id == "exp2"

    @pytest.mark.asyncio
    async def test_unconfirmed_holdout_produces_confirmable_assignment(
        self, rule_engine, store, make_rule, make_trigger, make_event, holdout_variant
    ):
        triggers = triggers_by_event(
            [make_trigger("app_open", [make_rule("r1", "exp1", expression="true")])]
        )
        await store.replace_unconfirmed({"exp1": holdout_variant})

        outcome = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)

        assert outcome.confirmable_assignment == ConfirmableAssignment(
            experiment_id="exp1", variant=holdout_variant
        )
        assert outcome.trigger_result.type == TriggerResultType.HOLDOUT
        assert outcome.trigger_result.experiment.id == "exp1"
        assert outcome.trigger_result.experiment.group_id == "group-1"
        assert outcome.trigger_result.experiment.variant == holdout_variant

    @pytest.mark.asyncio
    async def test_confirmed_assignment_overrides_unconfirmed(
        self, rule_engine, store, make_rule, make_trigger, make_event, holdout_variant, treatment_variant
    ):
        triggers = triggers_by_event([make_trigger("app_open", [make_rule("r1", "exp1")])])
        await store.confirm(ConfirmableAssignment(experiment_id="exp1", variant=treatment_variant))
        # Config sync would normally drop confirmed ids; force a conflicting candidate in
        store._unconfirmed["exp1"] = holdout_variant

        outcome = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)

        assert outcome.confirmable_assignment is None
        assert outcome.trigger_result.type == TriggerResultType.PAYWALL
        assert outcome.trigger_result.experiment.variant == treatment_variant

    @pytest.mark.asyncio
    async def test_missing_assignment_is_reported_as_not_found(
        self, rule_engine, make_rule, make_trigger, make_event
    ):
        triggers = triggers_by_event([make_trigger("app_open", [make_rule("r1", "exp-missing")])])

        outcome = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)

        assert outcome.trigger_result.type == TriggerResultType.ERROR
        assert outcome.trigger_result.error.code == PaywallErrorCode.ASSIGNMENT_NOT_FOUND
        assert outcome.trigger_result.error.experiment_id == "exp-missing"
        assert outcome.confirmable_assignment is None

    @pytest.mark.asyncio
    async def test_evaluation_is_deterministic(
        self, rule_engine, store, make_rule, make_trigger, make_event, treatment_variant
    ):
        triggers = triggers_by_event(
            [make_trigger("app_open", [make_rule("r1", "exp1", expression="params.plan == 'free'")])]
        )
        await store.replace_unconfirmed({"exp1": treatment_variant})
        event = make_event("app_open", plan="free")

        outcomes = [
            await rule_engine.evaluate(event, triggers, is_preemptive=True) for _ in range(3)
        ]

        assert outcomes[0] == outcomes[1] == outcomes[2]

    @pytest.mark.asyncio
    async def test_evaluate_never_confirms(
        self, rule_engine, store, make_rule, make_trigger, make_event, holdout_variant
    ):
        triggers = triggers_by_event([make_trigger("app_open", [make_rule("r1", "exp1")])])
        await store.replace_unconfirmed({"exp1": holdout_variant})

        for is_preemptive in (True, False, False, True):
            await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=is_preemptive)

        assert await store.get_confirmed_assignments() == {}
        assert store.get_unconfirmed_assignments() == {"exp1": holdout_variant}

    @pytest.mark.asyncio
    async def test_preemptive_flag_only_controls_counting(
        self, rule_engine, store, session_factory, make_rule, make_trigger, make_event, holdout_variant
    ):
        triggers = triggers_by_event([make_trigger("app_open", [make_rule("r1", "exp1")])])
        await store.replace_unconfirmed({"exp1": holdout_variant})

        dry_run = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=True)
        with session_factory() as db:
            assert OccurrenceRepository(db).count_occurrences("r1") == 0

        real = await rule_engine.evaluate(make_event("app_open"), triggers, is_preemptive=False)
        with session_factory() as db:
            assert OccurrenceRepository(db).count_occurrences("r1") == 1

        assert dry_run == real

    @pytest.mark.asyncio
    async def test_variant_type_classification(
        self, rule_engine, store, make_rule, make_trigger, make_event
    ):
        triggers = triggers_by_event(
            [
                make_trigger("a", [make_rule("ra", "exp-a")]),
                make_trigger("b", [make_rule("rb", "exp-b")]),
            ]
        )
        await store.replace_unconfirmed(
            {
                "exp-a": Variant(id="v-a", type=VariantType.HOLDOUT),
                "exp-b": Variant(id="v-b", type=VariantType.TREATMENT, paywall_id="pw"),
            }
        )

        holdout = await rule_engine.evaluate(make_event("a"), triggers, is_preemptive=True)
        paywall = await rule_engine.evaluate(make_event("b"), triggers, is_preemptive=True)

        assert holdout.trigger_result.type == TriggerResultType.HOLDOUT
        assert paywall.trigger_result.type == TriggerResultType.PAYWALL
