from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class VariantType(str, Enum):
    HOLDOUT = "holdout"
    TREATMENT = "treatment"


class Variant(BaseModel):
    """One arm of an experiment. Holdout variants never resolve to paywall content."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: VariantType
    paywall_id: Optional[str] = Field(
        None, description="Identifier of the paywall shown for a treatment variant."
    )


class Experiment(BaseModel):
    """The winning experiment arm for an evaluated event."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique ID for the experiment.")
    group_id: str
    variant: Variant


class ConfirmableAssignment(BaseModel):
    """A variant that came from the unconfirmed map and has not been persisted yet."""

    model_config = ConfigDict(frozen=True)

    experiment_id: str
    variant: Variant


class AssignmentModel(BaseModel):
    """Data model for a persisted (confirmed) assignment record."""

    experiment_id: str
    variant_id: str
    variant_type: VariantType
    paywall_id: Optional[str] = None
    confirmed_at: datetime

    model_config = ConfigDict(from_attributes=True)
