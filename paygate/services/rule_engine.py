# services/rule_engine.py
from typing import Dict, Optional

from paygate.core.logging import get_logger
from paygate.models.schemas.error import PaywallErrorCode
from paygate.models.schemas.event import EventData
from paygate.models.schemas.experiment import Experiment, VariantType
from paygate.models.schemas.trigger import Outcome, Trigger, TriggerResult, TriggerRule
from paygate.services.assignment_store import AssignmentStore
from paygate.services.expression_evaluator import ExpressionEvaluator

logger = get_logger(__name__)


class RuleEngine:
    def __init__(self, store: AssignmentStore, evaluator: ExpressionEvaluator):
        self.store = store
        self.evaluator = evaluator

    async def find_matching_rule(
        self, event: EventData, trigger: Trigger, is_preemptive: bool
    ) -> Optional[TriggerRule]:
        for rule in trigger.rules:
            if await self.evaluator.matches(rule, event, is_preemptive):
                return rule
        return None

    async def evaluate(
        self, event: EventData, triggers: Dict[str, Trigger], is_preemptive: bool
    ) -> Outcome:
        """
        Determines the outcome of an event against the given triggers.

        1. Find the trigger for the event name.
        2. Take the first rule (in declared order) whose expression matches.
        3. Resolve the rule's variant: confirmed assignments first, then the
           unconfirmed candidates. Only the latter produce a ConfirmableAssignment.
        4. Classify the variant as a holdout or a paywall.

        `is_preemptive` only suppresses occurrence counting; it never changes
        which rule matches. The confirmed map is never written here.
        """
        trigger = triggers.get(event.name)
        if trigger is None:
            return Outcome(trigger_result=TriggerResult.event_not_found())

        rule = await self.find_matching_rule(event, trigger, is_preemptive)
        if rule is None:
            return Outcome(trigger_result=TriggerResult.no_rule_match())

        variant, confirmable_assignment = await self.store.resolve(rule.experiment.id)
        if variant is None:
            logger.warning(
                "No assignment for matched rule",
                event_name=event.name,
                rule_id=rule.rule_id,
                experiment_id=rule.experiment.id,
            )
            return Outcome(
                trigger_result=TriggerResult.failure(
                    PaywallErrorCode.ASSIGNMENT_NOT_FOUND,
                    f"There isn't a paywall configured to show for experiment {rule.experiment.id}.",
                    experiment_id=rule.experiment.id,
                )
            )

        experiment = Experiment(
            id=rule.experiment.id,
            group_id=rule.experiment.group_id,
            variant=variant,
        )

        if variant.type == VariantType.HOLDOUT:
            trigger_result = TriggerResult.holdout(experiment)
        else:
            trigger_result = TriggerResult.paywall(experiment)

        return Outcome(
            confirmable_assignment=confirmable_assignment,
            trigger_result=trigger_result,
        )
