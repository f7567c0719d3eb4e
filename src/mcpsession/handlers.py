"""
Handler registry for method collaborators.

Handlers are plain coroutines keyed by wire method name. They receive the
request params and the session, run only after the authorization guard has
passed, and return a JSON-serialisable result (or a pydantic model). Domain
failures are reported by raising ``HandlerError`` subclasses.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from common.logging import get_logger
from .jsonrpc import MCPMethods

logger = get_logger(__name__)

RequestHandler = Callable[[Dict[str, Any], Any], Awaitable[Any]]

# Served by the core itself; collaborators cannot take them over
RESERVED_METHODS = frozenset({MCPMethods.INITIALIZE, MCPMethods.PING})


class HandlerRegistry:
    """Method name -> handler coroutine."""

    def __init__(self) -> None:
        self._handlers: Dict[str, RequestHandler] = {}

    def register(self, method: str, handler: RequestHandler) -> None:
        if method in RESERVED_METHODS:
            raise ValueError(f"Method '{method}' is handled by the session core")
        if method in self._handlers:
            logger.warning(event="handler_replaced", method=method)
        self._handlers[method] = handler
        logger.debug(
            event="handler_registered",
            method=method,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )

    def handler(self, method: str) -> Callable[[RequestHandler], RequestHandler]:
        """Decorator form of ``register``."""

        def decorator(func: RequestHandler) -> RequestHandler:
            self.register(method, func)
            return func

        return decorator

    def unregister(self, method: str) -> bool:
        return self._handlers.pop(method, None) is not None

    def get(self, method: str) -> Optional[RequestHandler]:
        return self._handlers.get(method)

    def methods(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, method: str) -> bool:
        return method in self._handlers
