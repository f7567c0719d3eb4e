"""
Capability descriptors, locked capability sets, and the pre-lock registry.

A capability set is a closed family of typed variants, one per capability the
protocol defines, plus an open ``experimental`` map. Capabilities a peer
declares that this implementation does not know are kept verbatim in
``extensions`` so they survive negotiation untouched.

The registry is the only mutable piece: it accumulates declarations until the
session locks it, then hands out an immutable ``CapabilitySet``.
"""

import copy
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from common.logging import get_logger
from .errors import RegistrationAfterLockError, UnknownCapabilityError

logger = get_logger(__name__)


class CapabilityOptions(BaseModel):
    """Base for per-capability option records."""

    model_config = ConfigDict(frozen=True, extra="allow")


class ResourcesCapability(CapabilityOptions):
    """Server serves resources; optionally supports subscriptions and list changes."""

    subscribe: bool = False
    listChanged: bool = False


class ToolsCapability(CapabilityOptions):
    """Server exposes tools."""

    listChanged: bool = False


class PromptsCapability(CapabilityOptions):
    """Server exposes prompt templates."""

    listChanged: bool = False


class LoggingCapability(CapabilityOptions):
    """Server emits notifications/message. Presence is the whole contract."""


class CompletionsCapability(CapabilityOptions):
    """Server answers completion/complete."""


class RootsCapability(CapabilityOptions):
    """Client exposes filesystem roots."""

    listChanged: bool = False


class SamplingCapability(CapabilityOptions):
    """Client accepts sampling/createMessage."""


class ElicitationCapability(CapabilityOptions):
    """Client accepts elicitation/create."""


class ExperimentalFeature(CapabilityOptions):
    """One entry of the experimental capability map."""

    enabled: bool = True
    version: Optional[str] = None
    description: Optional[str] = None
    deprecationDate: Optional[str] = None


EXPERIMENTAL = "experimental"

# Closed variant table: capability name -> option model
CAPABILITY_MODELS: Dict[str, Type[CapabilityOptions]] = {
    "resources": ResourcesCapability,
    "tools": ToolsCapability,
    "prompts": PromptsCapability,
    "logging": LoggingCapability,
    "completions": CompletionsCapability,
    "roots": RootsCapability,
    "sampling": SamplingCapability,
    "elicitation": ElicitationCapability,
}

KNOWN_CAPABILITIES = frozenset(CAPABILITY_MODELS) | {EXPERIMENTAL}


class CapabilitySet(BaseModel):
    """
    Everything one peer supports, plus the protocol version it was locked under.

    Instances are frozen. Build them with ``CapabilitySet.from_wire`` (peer
    data) or ``CapabilityRegistry.freeze`` (local declarations).
    """

    model_config = ConfigDict(frozen=True)

    protocol_version: Optional[str] = None
    resources: Optional[ResourcesCapability] = None
    tools: Optional[ToolsCapability] = None
    prompts: Optional[PromptsCapability] = None
    logging: Optional[LoggingCapability] = None
    completions: Optional[CompletionsCapability] = None
    roots: Optional[RootsCapability] = None
    sampling: Optional[SamplingCapability] = None
    elicitation: Optional[ElicitationCapability] = None
    experimental: Dict[str, ExperimentalFeature] = Field(default_factory=dict)
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_wire(
        cls, capabilities: Optional[Dict[str, Any]], protocol_version: Optional[str] = None
    ) -> "CapabilitySet":
        """
        Build a capability set from a wire-level capabilities object.

        Known capabilities are validated against their variant; unknown names
        are kept as opaque ``extensions``. Raises ``pydantic.ValidationError``
        when a known capability is malformed.
        """
        fields: Dict[str, Any] = {"protocol_version": protocol_version}
        extensions: Dict[str, Any] = {}

        for name, options in (capabilities or {}).items():
            if name == EXPERIMENTAL:
                fields[EXPERIMENTAL] = {
                    feature: ExperimentalFeature.model_validate(entry or {})
                    for feature, entry in (options or {}).items()
                }
            elif name in CAPABILITY_MODELS:
                fields[name] = CAPABILITY_MODELS[name].model_validate(options or {})
            else:
                extensions[name] = copy.deepcopy(options)

        fields["extensions"] = extensions
        return cls(**fields)

    def to_wire(self) -> Dict[str, Any]:
        """Render the capabilities object exactly as it was declared."""
        wire: Dict[str, Any] = {}
        for name in CAPABILITY_MODELS:
            options = getattr(self, name)
            if options is not None:
                wire[name] = _declared(options)
        if self.experimental:
            wire[EXPERIMENTAL] = {
                feature: _declared(entry)
                for feature, entry in self.experimental.items()
            }
        for name, options in self.extensions.items():
            wire[name] = copy.deepcopy(options)
        return wire

    def supports(self, capability: str, option: Optional[str] = None) -> bool:
        """
        True when ``capability`` was declared and, if given, its ``option`` is truthy.
        """
        if capability not in CAPABILITY_MODELS:
            return False
        options = getattr(self, capability)
        if options is None:
            return False
        if option is None:
            return True
        return bool(getattr(options, option, False))

    def experimental_enabled(self, feature: str) -> bool:
        entry = self.experimental.get(feature)
        return entry is not None and entry.enabled


def _declared(options: CapabilityOptions) -> Dict[str, Any]:
    """Options exactly as declared: explicitly set fields plus unknown extras."""
    declared = options.model_dump(exclude_unset=True)
    declared.update(copy.deepcopy(options.model_extra or {}))
    return declared


def _validate_declaration(name: str, options: Dict[str, Any]) -> None:
    if name == EXPERIMENTAL:
        for entry in options.values():
            ExperimentalFeature.model_validate(entry or {})
    else:
        CAPABILITY_MODELS[name].model_validate(options)


class CapabilityRegistry:
    """
    Pre-lock builder for the local capability set.

    ``declare`` shallow-merges options per capability: the last write for a
    sub-option wins and sub-options not mentioned are preserved. Once locked,
    every declaration raises ``RegistrationAfterLockError``.
    """

    def __init__(self, declarations: Optional[Dict[str, Optional[Dict[str, Any]]]] = None):
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._locked = False
        for name, options in (declarations or {}).items():
            self.declare(name, options)

    @property
    def locked(self) -> bool:
        return self._locked

    def declare(self, capability: str, options: Optional[Dict[str, Any]] = None) -> None:
        """Merge ``options`` into the pending descriptor for ``capability``."""
        if self._locked:
            raise RegistrationAfterLockError(capability)
        if capability not in KNOWN_CAPABILITIES:
            raise UnknownCapabilityError(capability)

        merged = dict(self._pending.get(capability, {}))
        merged.update(options or {})
        _validate_declaration(capability, merged)
        self._pending[capability] = merged

        logger.debug(event="capability_declared", capability=capability, options=merged)

    def declare_experimental(
        self,
        feature: str,
        enabled: bool = True,
        version: Optional[str] = None,
        description: Optional[str] = None,
        deprecation_date: Optional[str] = None,
    ) -> None:
        """Declare (or replace) one experimental feature."""
        entry: Dict[str, Any] = {"enabled": enabled}
        if version is not None:
            entry["version"] = version
        if description is not None:
            entry["description"] = description
        if deprecation_date is not None:
            entry["deprecationDate"] = deprecation_date
        self.declare(EXPERIMENTAL, {feature: entry})

    def pending(self) -> Dict[str, Dict[str, Any]]:
        """Copy of the pending descriptor."""
        return copy.deepcopy(self._pending)

    def lock(self) -> None:
        self._locked = True

    def freeze(self, protocol_version: Optional[str] = None) -> CapabilitySet:
        """Lock the registry and return the immutable capability set."""
        self._locked = True
        capability_set = CapabilitySet.from_wire(self._pending, protocol_version)
        logger.debug(
            event="capabilities_locked",
            protocol_version=protocol_version,
            capabilities=list(self._pending.keys()),
        )
        return capability_set

    def copy(self) -> "CapabilityRegistry":
        """Unlocked registry seeded with this registry's declarations."""
        return CapabilityRegistry(self.pending())
