# services/paywall_service.py
import asyncio
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from paygate.core.logging import get_logger
from paygate.core.settings import config_settings
from paygate.models.schemas.error import PaywallError
from paygate.models.schemas.event import EventData
from paygate.models.schemas.experiment import AssignmentModel, Variant
from paygate.models.schemas.presentation import (
    GetPaywallResult,
    PaywallStateKind,
    PresentationRequest,
    PresentationResult,
)
from paygate.models.schemas.trigger import Trigger, TriggerResultType
from paygate.services.assignment_store import AssignmentStore
from paygate.services.collaborators import (
    AttributesProvider,
    ContentProvider,
    DebugOverride,
    DebugSession,
    EntitlementProvider,
    HostingProvider,
    NoHostingProvider,
    StaticEntitlementProvider,
    UserAttributesStore,
    VariantContentProvider,
)
from paygate.services.config_state import ConfigState
from paygate.services.expression_evaluator import ExpressionEvaluator
from paygate.services.presentation_pipeline import (
    PipelineTerminated,
    PresentationPipeline,
    SingleFlightGuard,
)
from paygate.services.rule_engine import RuleEngine

logger = get_logger(__name__)


class PaywallService:
    """
    Owns the process-wide pieces (config, assignment store, rule engine,
    single-flight guard) and hands out one PresentationPipeline per request.
    Collaborators are injected; defaults suit a headless service.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        attributes: Optional[AttributesProvider] = None,
        entitlements: Optional[EntitlementProvider] = None,
        debug_session: Optional[DebugSession] = None,
        content_provider: Optional[ContentProvider] = None,
        hosting_provider: Optional[HostingProvider] = None,
        readiness_timeout: float = config_settings.READINESS_TIMEOUT_SECONDS,
        hosting_timeout: Optional[float] = config_settings.HOSTING_TIMEOUT_SECONDS,
    ):
        self.attributes = attributes or UserAttributesStore()
        self.entitlements = entitlements or StaticEntitlementProvider()
        self.debug_session = debug_session or DebugOverride()
        self.content_provider = content_provider or VariantContentProvider()
        self.hosting_provider = hosting_provider or NoHostingProvider()
        self.readiness_timeout = readiness_timeout
        self.hosting_timeout = hosting_timeout

        self.config = ConfigState()
        self.store = AssignmentStore(session_factory)
        self.evaluator = ExpressionEvaluator(session_factory, self.attributes)
        self.rule_engine = RuleEngine(self.store, self.evaluator)
        self.guard = SingleFlightGuard()

    async def sync_config(self, triggers: List[Trigger], assignments: Dict[str, Variant]) -> None:
        """
        Applies a config-sync push: unconfirmed assignments first, then the
        triggers, so a pipeline released by readiness sees both.
        """
        await self.store.replace_unconfirmed(assignments)
        self.config.replace_triggers(triggers)

    def create_pipeline(self, request: PresentationRequest) -> PresentationPipeline:
        return PresentationPipeline(
            request,
            config=self.config,
            rule_engine=self.rule_engine,
            store=self.store,
            entitlements=self.entitlements,
            debug_session=self.debug_session,
            content_provider=self.content_provider,
            hosting_provider=self.hosting_provider,
            guard=self.guard,
            readiness_timeout=self.readiness_timeout,
            hosting_timeout=self.hosting_timeout,
        )

    def present(self, request: PresentationRequest) -> PresentationPipeline:
        """Starts a presentation in the background; observe it through `pipeline.states`."""
        pipeline = self.create_pipeline(request)
        pipeline.start()
        return pipeline

    async def get_paywall(self, event: EventData) -> GetPaywallResult:
        """
        Resolves the paywall an event would show without presenting it.

        Holdouts are still confirmed; treatment assignments are not, since
        nothing is displayed.
        """
        pipeline = self.create_pipeline(PresentationRequest(event=event))
        try:
            resolved = await pipeline.resolve(check_single_flight=False)
        except PipelineTerminated as exc:
            state = exc.state
            if state.kind == PaywallStateKind.PRESENTATION_SKIPPED:
                return GetPaywallResult(skipped_reason=state.reason)
            return GetPaywallResult(error=state.error or PaywallError(message=state.reason))
        except Exception as e:
            logger.exception("Failed to resolve paywall", event_name=event.name)
            return GetPaywallResult(error=PaywallError(message=str(e)))

        return GetPaywallResult(content=resolved.content)

    async def get_presentation_result(
        self, event: EventData
    ) -> Tuple[PresentationResult, Optional[str]]:
        """
        Preemptively evaluates an event. Nothing is persisted: no occurrence is
        recorded and no assignment is confirmed.

        Returns the result together with the matched experiment id, if any.
        """
        if not self.config.is_ready:
            try:
                await asyncio.wait_for(
                    self.config.wait_until_ready(), timeout=self.readiness_timeout
                )
            except asyncio.TimeoutError:
                return PresentationResult.PAYWALL_NOT_AVAILABLE, None

        outcome = await self.rule_engine.evaluate(event, self.config.triggers, is_preemptive=True)
        result = outcome.trigger_result

        if result.type == TriggerResultType.EVENT_NOT_FOUND:
            return PresentationResult.EVENT_NOT_FOUND, None
        if result.type == TriggerResultType.NO_RULE_MATCH:
            return PresentationResult.NO_RULE_MATCH, None
        if result.type == TriggerResultType.ERROR:
            return PresentationResult.PAYWALL_NOT_AVAILABLE, result.error.experiment_id
        if result.type == TriggerResultType.HOLDOUT:
            return PresentationResult.HOLDOUT, result.experiment.id

        if await self.entitlements.has_active_entitlement():
            return PresentationResult.USER_IS_SUBSCRIBED, result.experiment.id
        return PresentationResult.PAYWALL, result.experiment.id

    def merge_user_attributes(self, attributes: Dict) -> Dict:
        if not isinstance(self.attributes, UserAttributesStore):
            raise ValueError("User attributes are managed by an external provider.")
        return self.attributes.merge(attributes)

    async def get_confirmed_assignments(self) -> List[AssignmentModel]:
        return await self.store.get_confirmed_records()

    async def reset(self) -> None:
        """Logout: clears confirmed and unconfirmed assignments and the trigger cache."""
        await self.store.reset()
        self.config.clear()
        if isinstance(self.attributes, UserAttributesStore):
            self.attributes.clear()
        logger.info("Paywall state reset")
