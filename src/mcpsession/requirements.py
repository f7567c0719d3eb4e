"""
Method requirement table.

Maps every capability-gated wire method (requests and notifications alike) to
the capability predicate that must hold on the side responsible for the
feature. The table is built once at import time and exposed read-only; the
authorization guard and the notification gate both read from it.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

from .capabilities import CapabilitySet
from .jsonrpc import MCPMethods


class CapabilitySide(str, Enum):
    """Which peer must have declared the capability."""

    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class Requirement:
    """Capability (and optional boolean sub-option) that must be declared."""

    capability: str
    option: Optional[str] = None
    side: CapabilitySide = CapabilitySide.SERVER

    def satisfied_by(self, capability_set: Optional[CapabilitySet]) -> bool:
        if capability_set is None:
            return False
        return capability_set.supports(self.capability, self.option)


@dataclass(frozen=True)
class ExperimentalRequirement:
    """Dynamic requirement for ``experimental/{feature}`` methods."""

    feature: str
    side: CapabilitySide = CapabilitySide.SERVER

    def satisfied_by(self, capability_set: Optional[CapabilitySet]) -> bool:
        if capability_set is None or not self.feature:
            return False
        return capability_set.experimental_enabled(self.feature)


AnyRequirement = Union[Requirement, ExperimentalRequirement]

_SERVER = CapabilitySide.SERVER
_CLIENT = CapabilitySide.CLIENT

METHOD_REQUIREMENTS: Mapping[str, Requirement] = MappingProxyType(
    {
        # Resources
        MCPMethods.RESOURCES_LIST: Requirement("resources"),
        MCPMethods.RESOURCES_TEMPLATES_LIST: Requirement("resources"),
        MCPMethods.RESOURCES_READ: Requirement("resources"),
        MCPMethods.RESOURCES_SUBSCRIBE: Requirement("resources", "subscribe"),
        MCPMethods.RESOURCES_UNSUBSCRIBE: Requirement("resources", "subscribe"),
        MCPMethods.RESOURCES_UPDATED: Requirement("resources", "subscribe"),
        MCPMethods.RESOURCES_LIST_CHANGED: Requirement("resources", "listChanged"),
        # Tools
        MCPMethods.TOOLS_LIST: Requirement("tools"),
        MCPMethods.TOOLS_CALL: Requirement("tools"),
        MCPMethods.TOOLS_LIST_CHANGED: Requirement("tools", "listChanged"),
        # Prompts
        MCPMethods.PROMPTS_LIST: Requirement("prompts"),
        MCPMethods.PROMPTS_GET: Requirement("prompts"),
        MCPMethods.PROMPTS_LIST_CHANGED: Requirement("prompts", "listChanged"),
        # Logging
        MCPMethods.LOGGING_SET_LEVEL: Requirement("logging"),
        MCPMethods.LOGGING_MESSAGE: Requirement("logging"),
        # Completion
        MCPMethods.COMPLETION_COMPLETE: Requirement("completions"),
        # Client-served features
        MCPMethods.SAMPLING_CREATE_MESSAGE: Requirement("sampling", side=_CLIENT),
        MCPMethods.ROOTS_LIST: Requirement("roots", side=_CLIENT),
        MCPMethods.ROOTS_LIST_CHANGED: Requirement("roots", "listChanged", side=_CLIENT),
        MCPMethods.ELICITATION_CREATE: Requirement("elicitation", side=_CLIENT),
    }
)


def requirement_for(method: str) -> Optional[AnyRequirement]:
    """
    Look up the requirement for a wire method.

    Exact matches win; otherwise ``experimental/<feature>`` resolves to a
    dynamic feature lookup. ``None`` means the method is capability-free.
    """
    requirement = METHOD_REQUIREMENTS.get(method)
    if requirement is not None:
        return requirement
    if method.startswith(MCPMethods.EXPERIMENTAL_PREFIX):
        return ExperimentalRequirement(method[len(MCPMethods.EXPERIMENTAL_PREFIX) :])
    return None
