from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .experiment import Variant
from .presentation import PresentationResult
from .trigger import Trigger


class ConfigSyncModel(BaseModel):
    """Schema for a config-sync push (API Input). Replaces triggers and unconfirmed assignments wholesale."""

    triggers: List[Trigger] = Field(default_factory=list)
    assignments: Dict[str, Variant] = Field(
        default_factory=dict,
        description="Unconfirmed experiment_id -> variant candidates.",
    )


class AttributesUpdateModel(BaseModel):
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Merged into user attributes; null removes a key."
    )


class PresentationResultResponseModel(BaseModel):
    event_name: str
    result: PresentationResult
    experiment_id: str | None = None
