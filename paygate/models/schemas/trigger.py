from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .error import PaywallError, PaywallErrorCode
from .experiment import ConfirmableAssignment, Experiment


class TriggerRuleOccurrence(BaseModel):
    """Frequency cap for a rule: fire at most `max_count` times per interval."""

    key: str
    max_count: int = Field(..., ge=1)
    # None means the count is over all time
    interval_minutes: Optional[int] = Field(None, ge=1)


class RuleExperiment(BaseModel):
    id: str
    group_id: str


class TriggerRule(BaseModel):
    rule_id: str
    expression: Optional[str] = Field(
        None, description="Predicate over user, device, params and occurrences. Empty matches."
    )
    experiment: RuleExperiment
    occurrence: Optional[TriggerRuleOccurrence] = None

    @property
    def counter_key(self) -> str:
        """Key under which fired occurrences of this rule are counted."""
        if self.occurrence is not None:
            return self.occurrence.key
        return self.rule_id


class Trigger(BaseModel):
    event_name: str
    # Order is significant: the first matching rule wins
    rules: List[TriggerRule] = Field(default_factory=list)


class TriggerResultType(str, Enum):
    EVENT_NOT_FOUND = "event_not_found"
    NO_RULE_MATCH = "no_rule_match"
    HOLDOUT = "holdout"
    PAYWALL = "paywall"
    ERROR = "error"


class TriggerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TriggerResultType
    experiment: Optional[Experiment] = None
    error: Optional[PaywallError] = None

    @classmethod
    def event_not_found(cls) -> "TriggerResult":
        return cls(type=TriggerResultType.EVENT_NOT_FOUND)

    @classmethod
    def no_rule_match(cls) -> "TriggerResult":
        return cls(type=TriggerResultType.NO_RULE_MATCH)

    @classmethod
    def holdout(cls, experiment: Experiment) -> "TriggerResult":
        return cls(type=TriggerResultType.HOLDOUT, experiment=experiment)

    @classmethod
    def paywall(cls, experiment: Experiment) -> "TriggerResult":
        return cls(type=TriggerResultType.PAYWALL, experiment=experiment)

    @classmethod
    def failure(
        cls, code: PaywallErrorCode, message: str, experiment_id: Optional[str] = None
    ) -> "TriggerResult":
        return cls(
            type=TriggerResultType.ERROR,
            error=PaywallError(code=code, experiment_id=experiment_id, message=message),
        )


class Outcome(BaseModel):
    """Result of evaluating an event, plus the assignment to confirm if any."""

    model_config = ConfigDict(frozen=True)

    confirmable_assignment: Optional[ConfirmableAssignment] = None
    trigger_result: TriggerResult


def triggers_by_event(triggers: List[Trigger]) -> Dict[str, Trigger]:
    return {trigger.event_name: trigger for trigger in triggers}
