from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .error import PaywallError
from .event import EventData


class PresentationStage(str, Enum):
    SINGLE_FLIGHT = "single_flight"
    READINESS = "readiness"
    DEBUG_OVERRIDE = "debug_override"
    RULE_EVALUATION = "rule_evaluation"
    ENTITLEMENT = "entitlement"
    HOLDOUT_CONFIRMATION = "holdout_confirmation"
    CONTENT_ACQUISITION = "content_acquisition"
    HOSTING_ACQUISITION = "hosting_acquisition"
    ASSIGNMENT_CONFIRMATION = "assignment_confirmation"
    PRESENT = "present"


class PreventedReason(str, Enum):
    ALREADY_PRESENTED = "already_presented"
    EVENT_NOT_FOUND = "event_not_found"
    NO_RULE_MATCH = "no_rule_match"
    USER_IS_SUBSCRIBED = "user_is_subscribed"
    READINESS_TIMEOUT = "readiness_timeout"
    CONTENT_ACQUISITION_FAILED = "content_acquisition_failed"
    NO_HOSTING_CONTEXT = "no_hosting_context"
    ERROR = "error"


class SkippedReason(str, Enum):
    HOLDOUT = "holdout"


class DismissalResult(str, Enum):
    PURCHASED = "purchased"
    DECLINED = "declined"
    RESTORED = "restored"
    ERROR = "error"


class PaywallStateKind(str, Enum):
    PLACEHOLDER = "placeholder"
    PRESENTING = "presenting"
    PRESENTED = "presented"
    PRESENTATION_PREVENTED = "presentation_prevented"
    PRESENTATION_SKIPPED = "presentation_skipped"


TERMINAL_STATE_KINDS = frozenset(
    {
        PaywallStateKind.PRESENTED,
        PaywallStateKind.PRESENTATION_PREVENTED,
        PaywallStateKind.PRESENTATION_SKIPPED,
    }
)


class PaywallContent(BaseModel):
    """Display-ready paywall resolved by the rendering subsystem."""

    paywall_id: str
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class PaywallState(BaseModel):
    """
    One lifecycle state of a presentation pipeline.

    `reason` is a PreventedReason value for PRESENTATION_PREVENTED and a
    SkippedReason value for PRESENTATION_SKIPPED. `error` is set when the
    terminal state was caused by a failure from the closed error taxonomy.
    """

    model_config = ConfigDict(frozen=True)

    kind: PaywallStateKind
    reason: Optional[str] = None
    stage: Optional[PresentationStage] = None
    experiment_id: Optional[str] = None
    paywall_id: Optional[str] = None
    dismissal_result: Optional[DismissalResult] = None
    error: Optional[PaywallError] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_STATE_KINDS

    @classmethod
    def placeholder(cls) -> "PaywallState":
        return cls(kind=PaywallStateKind.PLACEHOLDER)

    @classmethod
    def presenting(cls, content: PaywallContent) -> "PaywallState":
        return cls(
            kind=PaywallStateKind.PRESENTING,
            stage=PresentationStage.PRESENT,
            experiment_id=content.experiment_id,
            paywall_id=content.paywall_id,
        )

    @classmethod
    def presented(
        cls, content: PaywallContent, dismissal_result: DismissalResult
    ) -> "PaywallState":
        return cls(
            kind=PaywallStateKind.PRESENTED,
            stage=PresentationStage.PRESENT,
            experiment_id=content.experiment_id,
            paywall_id=content.paywall_id,
            dismissal_result=dismissal_result,
        )

    @classmethod
    def prevented(
        cls,
        reason: PreventedReason,
        stage: PresentationStage,
        experiment_id: Optional[str] = None,
        error: Optional[PaywallError] = None,
    ) -> "PaywallState":
        return cls(
            kind=PaywallStateKind.PRESENTATION_PREVENTED,
            reason=reason.value,
            stage=stage,
            experiment_id=experiment_id,
            error=error,
        )

    @classmethod
    def skipped(
        cls,
        reason: SkippedReason,
        stage: PresentationStage,
        experiment_id: Optional[str] = None,
    ) -> "PaywallState":
        return cls(
            kind=PaywallStateKind.PRESENTATION_SKIPPED,
            reason=reason.value,
            stage=stage,
            experiment_id=experiment_id,
        )


class PresentationRequest(BaseModel):
    event: EventData
    # Overrides of the configured pipeline bounds, in seconds
    readiness_timeout: Optional[float] = Field(None, gt=0)
    hosting_timeout: Optional[float] = Field(None, gt=0)


class GetPaywallResult(BaseModel):
    """Outcome of resolving a paywall without presenting it."""

    content: Optional[PaywallContent] = None
    skipped_reason: Optional[str] = None
    error: Optional[PaywallError] = None


class PresentationResult(str, Enum):
    """What would happen if the event were presented right now."""

    EVENT_NOT_FOUND = "event_not_found"
    NO_RULE_MATCH = "no_rule_match"
    HOLDOUT = "holdout"
    PAYWALL = "paywall"
    USER_IS_SUBSCRIBED = "user_is_subscribed"
    PAYWALL_NOT_AVAILABLE = "paywall_not_available"
