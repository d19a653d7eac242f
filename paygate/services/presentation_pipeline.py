# services/presentation_pipeline.py
"""
Cancellable state machine that takes one presentation request from event to
displayed paywall (or to the reason nothing was displayed).

Stages, in order:

1. single-flight guard      6. holdout confirmation
2. readiness wait           7. content acquisition
3. debug override           8. hosting acquisition
4. rule evaluation          9. assignment confirmation
5. entitlement gate        10. present and await dismissal

Every stage can end the run by raising PipelineTerminated with a terminal
state. Nothing but asyncio.CancelledError escapes `run`.
"""
import asyncio
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import List, Optional

from paygate.core.logging import get_logger
from paygate.models.schemas.error import PaywallError, PaywallErrorCode
from paygate.models.schemas.experiment import Experiment
from paygate.models.schemas.presentation import (
    DismissalResult,
    PaywallContent,
    PaywallState,
    PresentationRequest,
    PresentationStage,
    PreventedReason,
    SkippedReason,
)
from paygate.models.schemas.trigger import Outcome, TriggerResultType
from paygate.services.assignment_store import AssignmentStore
from paygate.services.collaborators import (
    ContentProvider,
    DebugSession,
    EntitlementProvider,
    HostingProvider,
    PresentationHost,
)
from paygate.services.config_state import ConfigState
from paygate.services.rule_engine import RuleEngine

logger = get_logger(__name__)


class AlreadyPresenting(RuntimeError):
    pass


class StateStreamClosed(RuntimeError):
    pass


class PipelineTerminated(Exception):
    """Raised by a stage to end the run with `state`."""

    def __init__(self, state: PaywallState):
        super().__init__(state.reason or state.kind.value)
        self.state = state


class SingleFlightGuard:
    """Process-scoped flag held by the one pipeline currently presenting."""

    def __init__(self):
        self._owner: Optional[object] = None

    @property
    def is_presenting(self) -> bool:
        return self._owner is not None

    @contextmanager
    def acquire(self, owner: object):
        if self._owner is not None:
            raise AlreadyPresenting()
        self._owner = owner
        try:
            yield
        finally:
            self._owner = None


class PaywallStateStream:
    """
    Append-only channel of lifecycle states for one pipeline.

    At most one terminal state is accepted; the stream closes right after it.
    A cancelled pipeline closes the stream without a terminal state.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._history: List[PaywallState] = []
        self._closed = False

    @property
    def history(self) -> List[PaywallState]:
        return list(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_state(self) -> Optional[PaywallState]:
        if self._history and self._history[-1].is_terminal:
            return self._history[-1]
        return None

    def emit(self, state: PaywallState) -> None:
        if self._closed:
            raise StateStreamClosed(f"cannot emit {state.kind.value} on a closed stream")
        self._history.append(state)
        self._queue.put_nowait(state)
        if state.is_terminal:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> PaywallState:
        item = await self._queue.get()
        if item is self._CLOSED:
            # Leave the marker for any later iteration
            self._queue.put_nowait(self._CLOSED)
            raise StopAsyncIteration
        return item


@dataclass
class ResolvedPaywall:
    content: PaywallContent
    # None when a debug session pinned the paywall
    outcome: Optional[Outcome] = None


class PresentationPipeline:
    def __init__(
        self,
        request: PresentationRequest,
        *,
        config: ConfigState,
        rule_engine: RuleEngine,
        store: AssignmentStore,
        entitlements: EntitlementProvider,
        debug_session: DebugSession,
        content_provider: ContentProvider,
        hosting_provider: HostingProvider,
        guard: SingleFlightGuard,
        readiness_timeout: float,
        hosting_timeout: Optional[float] = None,
    ):
        self.request = request
        self.config = config
        self.rule_engine = rule_engine
        self.store = store
        self.entitlements = entitlements
        self.debug_session = debug_session
        self.content_provider = content_provider
        self.hosting_provider = hosting_provider
        self.guard = guard
        self.readiness_timeout = request.readiness_timeout or readiness_timeout
        self.hosting_timeout = request.hosting_timeout or hosting_timeout

        self.states = PaywallStateStream()
        self._task: Optional[asyncio.Task] = None
        self._stage: Optional[PresentationStage] = None
        self._experiment_id: Optional[str] = None

    # --- Task control ---

    def start(self) -> PaywallStateStream:
        """Schedules the run on the current event loop and returns its state stream."""
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            # Covers cancellation before the run got to execute
            self._task.add_done_callback(lambda _: self.states.close())
        return self.states

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def wait(self) -> Optional[PaywallState]:
        """Waits for the run to finish. Returns None if it was cancelled."""
        if self._task is None:
            raise RuntimeError("pipeline has not been started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return None
            raise

    async def run(self) -> PaywallState:
        self.states.emit(PaywallState.placeholder())
        try:
            terminal = await self._present()
        except PipelineTerminated as exc:
            terminal = exc.state
        except asyncio.CancelledError:
            logger.info(
                "Presentation cancelled",
                event_name=self.request.event.name,
                stage=self._stage.value if self._stage else None,
                experiment_id=self._experiment_id,
            )
            self.states.close()
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error during presentation",
                event_name=self.request.event.name,
                stage=self._stage.value if self._stage else None,
                experiment_id=self._experiment_id,
            )
            terminal = PaywallState.prevented(
                PreventedReason.ERROR,
                self._stage,
                self._experiment_id,
                error=PaywallError(
                    stage=self._stage.value if self._stage else None,
                    experiment_id=self._experiment_id,
                    message=str(exc),
                ),
            )

        self.states.emit(terminal)
        logger.info(
            "Presentation finished",
            event_name=self.request.event.name,
            state=terminal.kind.value,
            reason=terminal.reason,
            stage=terminal.stage.value if terminal.stage else None,
            experiment_id=terminal.experiment_id,
        )
        return terminal

    # --- Helpers ---

    def _enter(self, stage: PresentationStage) -> None:
        self._stage = stage

    def _prevent(
        self,
        reason: PreventedReason,
        code: Optional[PaywallErrorCode] = None,
        message: Optional[str] = None,
    ) -> PipelineTerminated:
        error = None
        if code is not None:
            error = PaywallError(
                code=code,
                stage=self._stage.value,
                experiment_id=self._experiment_id,
                message=message or code.value,
            )
        return PipelineTerminated(
            PaywallState.prevented(reason, self._stage, self._experiment_id, error=error)
        )

    # --- Stages 1-7 ---

    async def resolve(self, check_single_flight: bool = True) -> ResolvedPaywall:
        """Runs stages 1 to 7 and returns the content to show."""
        if check_single_flight:
            self._enter(PresentationStage.SINGLE_FLIGHT)
            if self.guard.is_presenting:
                raise self._prevent(PreventedReason.ALREADY_PRESENTED)

        await self._wait_until_ready()

        self._enter(PresentationStage.DEBUG_OVERRIDE)
        pinned_paywall_id = self.debug_session.pinned_paywall_id()
        if pinned_paywall_id is not None:
            logger.info("Debug session pinned paywall", paywall_id=pinned_paywall_id)
            content = await self._acquire_content(pinned_paywall_id, None)
            return ResolvedPaywall(content=content)

        outcome = await self._evaluate_rules()
        experiment = outcome.trigger_result.experiment

        if outcome.trigger_result.type == TriggerResultType.PAYWALL:
            await self._check_entitlement()
        else:
            await self._confirm_holdout(outcome)

        if experiment.variant.paywall_id is None:
            self._enter(PresentationStage.CONTENT_ACQUISITION)
            raise self._prevent(
                PreventedReason.CONTENT_ACQUISITION_FAILED,
                PaywallErrorCode.CONTENT_ACQUISITION_FAILED,
                f"Variant {experiment.variant.id} has no paywall.",
            )

        content = await self._acquire_content(experiment.variant.paywall_id, experiment)
        return ResolvedPaywall(content=content, outcome=outcome)

    async def _wait_until_ready(self) -> None:
        self._enter(PresentationStage.READINESS)
        if self.config.is_ready:
            return
        try:
            await asyncio.wait_for(self.config.wait_until_ready(), timeout=self.readiness_timeout)
        except asyncio.TimeoutError:
            raise self._prevent(
                PreventedReason.READINESS_TIMEOUT,
                PaywallErrorCode.READINESS_TIMEOUT,
                f"Configuration was not loaded within {self.readiness_timeout}s.",
            )

    async def _evaluate_rules(self) -> Outcome:
        self._enter(PresentationStage.RULE_EVALUATION)
        outcome = await self.rule_engine.evaluate(
            self.request.event, self.config.triggers, is_preemptive=False
        )
        result = outcome.trigger_result

        if result.type == TriggerResultType.EVENT_NOT_FOUND:
            raise self._prevent(
                PreventedReason.EVENT_NOT_FOUND,
                PaywallErrorCode.CONFIGURATION_MISSING,
                f"No trigger is configured for event {self.request.event.name}.",
            )
        if result.type == TriggerResultType.NO_RULE_MATCH:
            raise self._prevent(
                PreventedReason.NO_RULE_MATCH,
                PaywallErrorCode.NO_RULE_MATCHED,
                f"No rule matched event {self.request.event.name}.",
            )
        if result.type == TriggerResultType.ERROR:
            self._experiment_id = result.error.experiment_id
            raise self._prevent(PreventedReason.ERROR, result.error.code, result.error.message)

        self._experiment_id = result.experiment.id
        return outcome

    async def _check_entitlement(self) -> None:
        self._enter(PresentationStage.ENTITLEMENT)
        if await self.entitlements.has_active_entitlement():
            raise self._prevent(PreventedReason.USER_IS_SUBSCRIBED)

    async def _confirm_holdout(self, outcome: Outcome) -> None:
        self._enter(PresentationStage.HOLDOUT_CONFIRMATION)
        if outcome.confirmable_assignment is not None:
            await asyncio.shield(self.store.confirm(outcome.confirmable_assignment))
        raise PipelineTerminated(
            PaywallState.skipped(SkippedReason.HOLDOUT, self._stage, self._experiment_id)
        )

    async def _acquire_content(
        self, paywall_id: str, experiment: Optional[Experiment]
    ) -> PaywallContent:
        self._enter(PresentationStage.CONTENT_ACQUISITION)
        try:
            content = await self.content_provider.acquire(paywall_id, experiment, self.request.event)
        except Exception as exc:
            logger.warning(
                "Content acquisition failed",
                paywall_id=paywall_id,
                experiment_id=self._experiment_id,
                error=str(exc),
            )
            raise self._prevent(
                PreventedReason.CONTENT_ACQUISITION_FAILED,
                PaywallErrorCode.CONTENT_ACQUISITION_FAILED,
                f"Could not load paywall {paywall_id}: {exc}",
            )

        if content is None:
            raise self._prevent(
                PreventedReason.CONTENT_ACQUISITION_FAILED,
                PaywallErrorCode.CONTENT_ACQUISITION_FAILED,
                f"Paywall {paywall_id} is not available.",
            )
        return content

    # --- Stages 8-10 ---

    async def _acquire_host(self) -> PresentationHost:
        self._enter(PresentationStage.HOSTING_ACQUISITION)
        host = None
        try:
            if self.hosting_timeout is None:
                host = await self.hosting_provider.acquire()
            else:
                host = await asyncio.wait_for(
                    self.hosting_provider.acquire(), timeout=self.hosting_timeout
                )
        except asyncio.TimeoutError:
            logger.warning("Timed out acquiring a hosting context", timeout=self.hosting_timeout)
        except Exception as exc:
            logger.warning("Hosting context acquisition failed", error=str(exc))

        if host is None:
            raise self._prevent(
                PreventedReason.NO_HOSTING_CONTEXT,
                PaywallErrorCode.HOSTING_UNAVAILABLE,
                "There is no surface to present the paywall on.",
            )
        return host

    async def _present(self) -> PaywallState:
        resolved = await self.resolve()
        host = await self._acquire_host()

        with ExitStack() as stack:
            self._enter(PresentationStage.ASSIGNMENT_CONFIRMATION)
            try:
                stack.enter_context(self.guard.acquire(self))
            except AlreadyPresenting:
                raise self._prevent(PreventedReason.ALREADY_PRESENTED)

            # From here on the paywall is guaranteed to be handed to the host
            assignment = resolved.outcome.confirmable_assignment if resolved.outcome else None
            if assignment is not None:
                await asyncio.shield(self.store.confirm(assignment))

            self._enter(PresentationStage.PRESENT)
            self.states.emit(PaywallState.presenting(resolved.content))
            try:
                dismissal_result = await host.present(resolved.content)
            except Exception:
                logger.exception(
                    "Host failed while presenting",
                    paywall_id=resolved.content.paywall_id,
                    experiment_id=self._experiment_id,
                )
                dismissal_result = DismissalResult.ERROR

            return PaywallState.presented(resolved.content, dismissal_result)
