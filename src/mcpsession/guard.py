"""
Method authorization guard.

Single place where a method name is checked against the negotiated
capabilities. Handlers run only after ``authorize`` returns and never repeat
the check themselves.
"""

from typing import TYPE_CHECKING

from .errors import CapabilityNotSupportedError
from .requirements import requirement_for

if TYPE_CHECKING:
    from .session import Session


class MethodAuthorizationGuard:
    """Pure predicate over a session's locked capability sets."""

    def is_authorized(self, method: str, session: "Session") -> bool:
        """
        True when ``method`` may be served on ``session``.

        Capability-free methods are always authorized. Gated methods are
        checked against the capability set of the side that must support the
        feature, never the caller's.
        """
        requirement = requirement_for(method)
        if requirement is None:
            return True
        return requirement.satisfied_by(session.capabilities_for(requirement.side))

    def authorize(self, method: str, session: "Session") -> None:
        """Raise ``CapabilityNotSupportedError`` unless ``method`` is authorized."""
        if not self.is_authorized(method, session):
            raise CapabilityNotSupportedError(method)


# Stateless; shared by every connection
default_guard = MethodAuthorizationGuard()
