# services/collaborators.py
"""
Interfaces of the collaborators the rule engine and presentation pipeline
depend on, plus the defaults the service runs with when nothing else is
injected. Rendering, purchases and debugging live outside this package; only
their seams are defined here.
"""
from typing import Any, Dict, Optional, Protocol

from paygate.models.schemas.event import EventData
from paygate.models.schemas.experiment import Experiment
from paygate.models.schemas.presentation import DismissalResult, PaywallContent


class AttributesProvider(Protocol):
    async def get_attributes(self) -> Dict[str, Dict[str, Any]]:
        """Returns computed attributes grouped by namespace, e.g. {"user": {...}, "device": {...}}."""
        ...


class EntitlementProvider(Protocol):
    async def has_active_entitlement(self) -> bool: ...


class DebugSession(Protocol):
    def pinned_paywall_id(self) -> Optional[str]: ...


class ContentProvider(Protocol):
    async def acquire(
        self, paywall_id: str, experiment: Optional[Experiment], event: EventData
    ) -> PaywallContent: ...


class PresentationHost(Protocol):
    async def present(self, content: PaywallContent) -> DismissalResult:
        """Shows the content and resolves once the user dismisses it."""
        ...


class HostingProvider(Protocol):
    async def acquire(self) -> Optional[PresentationHost]:
        """Returns a surface able to display a paywall, or None when there is none."""
        ...


class UserAttributesStore:
    """In-memory user attributes; merging a key with None removes it."""

    def __init__(self, device: Optional[Dict[str, Any]] = None):
        self._user: Dict[str, Any] = {}
        self._device: Dict[str, Any] = dict(device or {})

    def merge(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(self._user)
        for key, value in attributes.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        self._user = merged
        return dict(merged)

    def clear(self) -> None:
        self._user = {}

    async def get_attributes(self) -> Dict[str, Dict[str, Any]]:
        return {"user": dict(self._user), "device": dict(self._device)}


class StaticEntitlementProvider:
    def __init__(self, active: bool = False):
        self.active = active

    async def has_active_entitlement(self) -> bool:
        return self.active


class DebugOverride:
    """Debug session that can pin one paywall for every presentation."""

    def __init__(self, paywall_id: Optional[str] = None):
        self._paywall_id = paywall_id

    def pin(self, paywall_id: Optional[str]) -> None:
        self._paywall_id = paywall_id

    def pinned_paywall_id(self) -> Optional[str]:
        return self._paywall_id


class VariantContentProvider:
    """Resolves content straight from the paywall identifier; no payload."""

    async def acquire(
        self, paywall_id: str, experiment: Optional[Experiment], event: EventData
    ) -> PaywallContent:
        return PaywallContent(
            paywall_id=paywall_id,
            experiment_id=experiment.id if experiment else None,
            variant_id=experiment.variant.id if experiment else None,
        )


class NoHostingProvider:
    """Used where no display surface exists, e.g. the HTTP service."""

    async def acquire(self) -> Optional[PresentationHost]:
        return None
