"""
Shared fixtures: a throwaway SQLite store per test and small builders for
triggers, rules and variants.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from paygate.core.db import build_engine, build_session_factory, init_db
from paygate.models.schemas.event import EventData
from paygate.models.schemas.experiment import Variant, VariantType
from paygate.models.schemas.presentation import DismissalResult, PaywallContent
from paygate.models.schemas.trigger import (
    RuleExperiment,
    Trigger,
    TriggerRule,
    TriggerRuleOccurrence,
)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'paygate.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def make_rule():
    def _make_rule(
        rule_id: str,
        experiment_id: str,
        expression: Optional[str] = None,
        group_id: str = "group-1",
        occurrence: Optional[TriggerRuleOccurrence] = None,
    ) -> TriggerRule:
        return TriggerRule(
            rule_id=rule_id,
            expression=expression,
            experiment=RuleExperiment(id=experiment_id, group_id=group_id),
            occurrence=occurrence,
        )

    return _make_rule


@pytest.fixture
def make_trigger():
    def _make_trigger(event_name: str, rules: List[TriggerRule]) -> Trigger:
        return Trigger(event_name=event_name, rules=rules)

    return _make_trigger


@pytest.fixture
def holdout_variant() -> Variant:
    return Variant(id="holdout", type=VariantType.HOLDOUT)


@pytest.fixture
def treatment_variant() -> Variant:
    return Variant(id="treatment", type=VariantType.TREATMENT, paywall_id="paywall-a")


def event(name: str, **parameters) -> EventData:
    return EventData(name=name, parameters=parameters)


@pytest.fixture
def make_event():
    return event


class StubHost:
    """Presentation host whose dismissal can be held open by the test."""

    def __init__(self, result: DismissalResult = DismissalResult.PURCHASED, hold: bool = False):
        self.result = result
        self.hold = hold
        self.presented: List[PaywallContent] = []
        self.shown = asyncio.Event()
        self.dismissed = asyncio.Event()

    async def present(self, content: PaywallContent) -> DismissalResult:
        self.presented.append(content)
        self.shown.set()
        if self.hold:
            await self.dismissed.wait()
        return self.result


@pytest.fixture
def host() -> StubHost:
    return StubHost()


@pytest.fixture
def hosting_provider(host):
    provider = MagicMock()
    provider.acquire = AsyncMock(return_value=host)
    return provider


@pytest.fixture
def content_provider():
    async def _acquire(paywall_id, experiment, event_data):
        return PaywallContent(
            paywall_id=paywall_id,
            experiment_id=experiment.id if experiment else None,
            variant_id=experiment.variant.id if experiment else None,
        )

    provider = MagicMock()
    provider.acquire = AsyncMock(side_effect=_acquire)
    return provider


@pytest.fixture
def make_host():
    return StubHost
