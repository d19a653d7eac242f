from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PaywallErrorCode(str, Enum):
    """Closed set of reasons a presentation can fail."""

    CONFIGURATION_MISSING = "configuration_missing"
    NO_RULE_MATCHED = "no_rule_matched"
    ASSIGNMENT_NOT_FOUND = "assignment_not_found"
    READINESS_TIMEOUT = "readiness_timeout"
    CONTENT_ACQUISITION_FAILED = "content_acquisition_failed"
    HOSTING_UNAVAILABLE = "hosting_unavailable"


class PaywallError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: Optional[PaywallErrorCode] = None
    stage: Optional[str] = None
    experiment_id: Optional[str] = None
    message: str
