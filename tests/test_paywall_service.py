"""
Tests for PaywallService: config sync, preemptive results, get-paywall and reset.
"""

import pytest
import pytest_asyncio

from paygate.models.schemas.error import PaywallErrorCode
from paygate.models.schemas.presentation import PresentationResult, SkippedReason
from paygate.models.schemas.trigger import TriggerRuleOccurrence
from paygate.repositories.occurrence_repo import OccurrenceRepository
from paygate.services.collaborators import StaticEntitlementProvider, UserAttributesStore
from paygate.services.paywall_service import PaywallService


class TestPaywallService:
    @pytest.fixture
    def entitlements(self):
        return StaticEntitlementProvider(active=False)

    @pytest.fixture
    def service(self, session_factory, entitlements):
        return PaywallService(session_factory, entitlements=entitlements, readiness_timeout=0.2)

    @pytest_asyncio.fixture
    async def configured(self, service, make_rule, make_trigger, holdout_variant, treatment_variant):
        await service.sync_config(
            [
                make_trigger("app_open", [make_rule("r-open", "exp1")]),
                make_trigger(
                    "upgrade",
                    [
                        make_rule(
                            "r-upgrade",
                            "exp2",
                            expression="user.plan == 'free'",
                            occurrence=TriggerRuleOccurrence(key="upgrade-cap", max_count=1),
                        )
                    ],
                ),
            ],
            {"exp1": holdout_variant, "exp2": treatment_variant},
        )
        service.merge_user_attributes({"plan": "free"})
        return service

    @pytest.mark.asyncio
    async def test_presentation_result_is_side_effect_free(
        self, configured, session_factory, make_event
    ):
        for _ in range(3):
            result, experiment_id = await configured.get_presentation_result(make_event("upgrade"))
            assert result == PresentationResult.PAYWALL
            assert experiment_id == "exp2"

        with session_factory() as db:
            assert OccurrenceRepository(db).count_occurrences("upgrade-cap") == 0
        assert await configured.store.get_confirmed_assignments() == {}

    @pytest.mark.asyncio
    async def test_presentation_result_classification(self, configured, entitlements, make_event):
        assert (await configured.get_presentation_result(make_event("checkout")))[0] == (
            PresentationResult.EVENT_NOT_FOUND
        )
        assert (await configured.get_presentation_result(make_event("app_open")))[0] == (
            PresentationResult.HOLDOUT
        )

        configured.merge_user_attributes({"plan": "pro"})
        assert (await configured.get_presentation_result(make_event("upgrade")))[0] == (
            PresentationResult.NO_RULE_MATCH
        )

        configured.merge_user_attributes({"plan": "free"})
        entitlements.active = True
        assert (await configured.get_presentation_result(make_event("upgrade")))[0] == (
            PresentationResult.USER_IS_SUBSCRIBED
        )

    @pytest.mark.asyncio
    async def test_presentation_result_before_config(self, service, make_event):
        result, experiment_id = await service.get_presentation_result(make_event("app_open"))

        assert result == PresentationResult.PAYWALL_NOT_AVAILABLE
        assert experiment_id is None

    @pytest.mark.asyncio
    async def test_get_paywall_does_not_confirm_treatment(
        self, configured, session_factory, make_event
    ):
        result = await configured.get_paywall(make_event("upgrade"))

        assert result.content.paywall_id == "paywall-a"
        assert result.content.experiment_id == "exp2"
        assert result.error is None
        assert await configured.store.get_confirmed_assignments() == {}
        with session_factory() as db:
            assert OccurrenceRepository(db).count_occurrences("upgrade-cap") == 1

    @pytest.mark.asyncio
    async def test_get_paywall_confirms_holdout(self, configured, make_event, holdout_variant):
        result = await configured.get_paywall(make_event("app_open"))

        assert result.content is None
        assert result.skipped_reason == SkippedReason.HOLDOUT.value
        assert await configured.store.get_confirmed_assignments() == {"exp1": holdout_variant}

    @pytest.mark.asyncio
    async def test_get_paywall_reports_errors(self, configured, make_event):
        result = await configured.get_paywall(make_event("checkout"))

        assert result.content is None
        assert result.error.code == PaywallErrorCode.CONFIGURATION_MISSING

    @pytest.mark.asyncio
    async def test_sync_config_replaces_triggers_wholesale(
        self, configured, make_rule, make_trigger, make_event, holdout_variant
    ):
        await configured.sync_config(
            [make_trigger("checkout", [make_rule("r-checkout", "exp3")])],
            {"exp3": holdout_variant},
        )

        assert set(configured.config.triggers) == {"checkout"}
        assert configured.store.get_unconfirmed_assignments() == {"exp3": holdout_variant}

    @pytest.mark.asyncio
    async def test_reset_clears_assignments_triggers_and_attributes(self, configured, make_event):
        await configured.get_paywall(make_event("app_open"))

        await configured.reset()

        assert await configured.get_confirmed_assignments() == []
        assert configured.store.get_unconfirmed_assignments() == {}
        assert configured.config.triggers == {}
        assert configured.config.is_ready
        assert (await configured.attributes.get_attributes())["user"] == {}


class TestUserAttributesStore:
    @pytest.mark.asyncio
    async def test_merge_and_remove(self):
        store = UserAttributesStore(device={"platform": "android"})

        store.merge({"plan": "free", "age": 30})
        merged = store.merge({"age": None, "country": "NL"})

        assert merged == {"plan": "free", "country": "NL"}
        attributes = await store.get_attributes()
        assert attributes["device"] == {"platform": "android"}
