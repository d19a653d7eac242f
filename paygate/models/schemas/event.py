from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventData(BaseModel):
    """An application event that may trigger a paywall."""

    name: str = Field(..., description="e.g., 'app_open', 'checkout'")
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Flexible JSON object exposed to rules as `params`."
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
