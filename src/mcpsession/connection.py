"""
Per-connection dispatcher.

Sequences every frame of one connection through the session state machine,
the authorization guard, the handler collaborators, and (outbound) the
notification gate. Errors are turned into JSON-RPC error objects here and
nowhere else; causes that are not ``MCPSessionError``s never reach the peer.
"""

import asyncio
import itertools
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from common.logging import get_logger, log_wire_frame
from .errors import (
    InvalidParamsError,
    MCPSessionError,
    MethodNotFoundError,
    ProtocolViolationError,
    RemoteError,
    SessionClosedError,
    internal_error,
    validation_details,
)
from .guard import MethodAuthorizationGuard, default_guard
from .handlers import HandlerRegistry
from .jsonrpc import (
    INVALID_REQUEST,
    PARSE_ERROR,
    JSONRPCErrorResponse,
    JSONRPCHandler,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    LoggingLevel,
    MCPCancelledParams,
    MCPLoggingMessageParams,
    MCPMethods,
    MCPSetLevelParams,
    MCPSubscribeParams,
)
from .negotiation import NegotiationEngine
from .notifications import NOTIFICATION_METHODS, NotificationGate, NotificationKind
from .session import Session
from .transports.base import Transport

logger = get_logger(__name__)

RequestId = Union[str, int]


class Connection:
    """
    One client <-> server connection: a Session bound to a Transport.

    Inbound frames enter through ``on_frame``. Server-initiated traffic
    leaves through ``send_request`` and the ``notify_*`` helpers.
    """

    def __init__(
        self,
        session: Session,
        transport: Transport,
        handlers: HandlerRegistry,
        negotiation: NegotiationEngine,
        guard: MethodAuthorizationGuard = default_guard,
        gate: Optional[NotificationGate] = None,
        request_timeout: float = 60.0,
        on_close: Optional[Callable[["Connection"], None]] = None,
    ):
        self.session = session
        self.transport = transport
        self.handlers = handlers
        self.negotiation = negotiation
        self.guard = guard
        self.gate = gate or NotificationGate()
        self.request_timeout = request_timeout
        self._on_close = on_close
        self._pending: Dict[RequestId, asyncio.Future] = {}
        # Inbound request id -> task running its handler
        self._in_flight: Dict[RequestId, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._request_ids = itertools.count(1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        """Attach the transport: Unconnected -> Negotiating."""
        self.session.connect()

    # Inbound

    def receive(self, frame: Union[bytes, str]) -> Optional["asyncio.Task[None]"]:
        """
        Accept one inbound transport frame without waiting for it to be handled.

        Responses to server-initiated requests are resolved right away.
        Requests, notifications and batches are dispatched on their own task,
        so a slow handler never holds up the frames queued behind it. Returns
        that task, or None when nothing was dispatched.
        """
        if self._closed or self.session.is_terminal:
            logger.warning(event="frame_after_close", session_id=self.session.id)
            return None

        try:
            data = JSONRPCHandler.decode_frame(frame)
        except ValueError as e:
            log_wire_frame("inbound", frame, self.session.id)
            self._protocol_violation(f"unparseable frame: {e}")
            return self._spawn(self._reject_frame(PARSE_ERROR, "Parse error"))

        log_wire_frame("inbound", data, self.session.id)

        if JSONRPCHandler.is_batch(data):
            if not data:
                self._protocol_violation("empty batch")
                return self._spawn(self._reject_frame(INVALID_REQUEST, "Empty batch"))
            return self._spawn(self._process_batch(data))

        try:
            message = JSONRPCHandler.parse_message(data)
        except ValueError as e:
            self._protocol_violation(f"invalid envelope: {e}")
            return self._spawn(
                self._reject_frame(INVALID_REQUEST, "Invalid Request", _request_id(data))
            )

        if isinstance(message, (JSONRPCResponse, JSONRPCErrorResponse)):
            self._handle_response(message)
            return None
        return self._spawn(self._process(message))

    async def on_frame(self, frame: Union[bytes, str]) -> None:
        """Process one inbound frame and wait until it has been handled."""
        task = self.receive(frame)
        if task is not None:
            await asyncio.wait({task})

    async def drain(self) -> None:
        """Wait for every in-flight dispatch task to finish."""
        current = asyncio.current_task()
        while True:
            tasks = [task for task in self._tasks if task is not current]
            if not tasks:
                return
            await asyncio.wait(tasks)

    @property
    def in_flight(self) -> List[RequestId]:
        """Ids of inbound requests whose handlers are still running."""
        return list(self._in_flight)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> "asyncio.Task[None]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, message: JSONRPCMessage) -> None:
        response = await self._dispatch_message(message)
        if response is not None:
            await self._send(response)
        if self.session.is_terminal:
            await self.close()

    async def _process_batch(self, items: List[Any]) -> None:
        results = await asyncio.gather(
            *(self._dispatch(item) for item in items), return_exceptions=True
        )
        responses = []
        for result in results:
            if isinstance(result, BaseModel):
                responses.append(JSONRPCHandler.to_wire(result))
            elif isinstance(result, Exception):
                logger.error(
                    event="batch_item_error", session_id=self.session.id, error=str(result)
                )
        if responses:
            await self._send(responses)
        if self.session.is_terminal:
            await self.close()

    async def _reject_frame(
        self, code: int, message: str, request_id: Optional[RequestId] = None
    ) -> None:
        await self._send(JSONRPCHandler.create_error_response(request_id, code, message))
        await self.close()

    async def _dispatch(self, data: Any) -> Optional[JSONRPCMessage]:
        try:
            message = JSONRPCHandler.parse_message(data)
        except ValueError as e:
            self._protocol_violation(f"invalid envelope: {e}")
            return JSONRPCHandler.create_error_response(
                _request_id(data), INVALID_REQUEST, "Invalid Request"
            )
        return await self._dispatch_message(message)

    async def _dispatch_message(self, message: JSONRPCMessage) -> Optional[JSONRPCMessage]:
        if isinstance(message, JSONRPCRequest):
            return await self._handle_request(message)
        if isinstance(message, JSONRPCNotification):
            await self._handle_notification(message)
            return None
        self._handle_response(message)
        return None

    async def _handle_request(
        self, request: JSONRPCRequest
    ) -> JSONRPCResponse | JSONRPCErrorResponse:
        """Handle a JSON-RPC request."""
        logger.debug(
            event="jsonrpc_request",
            method=request.method,
            id=request.id,
            session_id=self.session.id,
        )
        task = asyncio.current_task()
        if task is not None:
            self._in_flight[request.id] = task
        try:
            result = await self._route(request)
            return JSONRPCHandler.create_response(request.id, result)

        except MCPSessionError as e:
            if e.session_fatal:
                self.session.fail(e.message)
            logger.info(
                event="request_rejected",
                method=request.method,
                id=request.id,
                session_id=self.session.id,
                code=e.code,
                error=e.message,
            )
            return JSONRPCErrorResponse(id=request.id, error=e.to_jsonrpc_error())

        except Exception as e:
            logger.error(
                event="request_handler_error",
                method=request.method,
                id=request.id,
                session_id=self.session.id,
                error=str(e),
                exc_info=True,
            )
            return JSONRPCErrorResponse(id=request.id, error=internal_error())

        finally:
            if task is not None and self._in_flight.get(request.id) is task:
                del self._in_flight[request.id]

    async def _route(self, request: JSONRPCRequest) -> Any:
        method = request.method
        params = request.params or {}

        if method == MCPMethods.INITIALIZE:
            result = await self.negotiation.negotiate(self.session, request.params)
            return result.model_dump(exclude_none=True)

        if method == MCPMethods.PING:
            self.session.ensure_open()
            return {}

        self.session.require_ready()
        self.guard.authorize(method, self.session)

        if method == MCPMethods.RESOURCES_SUBSCRIBE:
            subscribe = _validate(MCPSubscribeParams, params)
            await self.gate.subscribe(self.session, subscribe.uri)
            return await self._call_optional_handler(method, params)

        if method == MCPMethods.RESOURCES_UNSUBSCRIBE:
            unsubscribe = _validate(MCPSubscribeParams, params)
            await self.gate.unsubscribe(self.session, unsubscribe.uri)
            return await self._call_optional_handler(method, params)

        if method == MCPMethods.LOGGING_SET_LEVEL:
            set_level = _validate(MCPSetLevelParams, params)
            self.session.log_level = set_level.level
            logger.info(
                event="log_level_set", session_id=self.session.id, level=set_level.level.value
            )
            return await self._call_optional_handler(method, params)

        handler = self.handlers.get(method)
        if handler is None:
            raise MethodNotFoundError(method)
        return _to_result(await handler(params, self.session))

    async def _call_optional_handler(self, method: str, params: Dict[str, Any]) -> Any:
        handler = self.handlers.get(method)
        if handler is None:
            return {}
        return _to_result(await handler(params, self.session))

    async def _handle_notification(self, notification: JSONRPCNotification) -> None:
        """Handle a JSON-RPC notification. Never produces a response."""
        method = notification.method
        logger.debug(event="jsonrpc_notification", method=method, session_id=self.session.id)

        try:
            if method == MCPMethods.INITIALIZED:
                logger.info(event="client_ready", session_id=self.session.id)
                return

            if method == MCPMethods.CANCEL:
                cancelled = _validate(MCPCancelledParams, notification.params or {})
                task = self._in_flight.get(cancelled.requestId)
                # Cancelled requests get no response
                if task is not None and task is not asyncio.current_task():
                    task.cancel()
                logger.info(
                    event="request_cancelled",
                    session_id=self.session.id,
                    request_id=cancelled.requestId,
                    reason=cancelled.reason,
                    in_flight=task is not None,
                )
                return

            self.session.require_ready()
            self.guard.authorize(method, self.session)

            handler = self.handlers.get(method)
            if handler is None:
                logger.warning(event="unknown_notification", method=method)
                return
            await handler(notification.params or {}, self.session)

        except MCPSessionError as e:
            logger.warning(
                event="notification_rejected",
                method=method,
                session_id=self.session.id,
                error=e.message,
            )
        except Exception as e:
            logger.error(
                event="notification_handler_error",
                method=method,
                session_id=self.session.id,
                error=str(e),
                exc_info=True,
            )

    def _handle_response(self, response: JSONRPCResponse | JSONRPCErrorResponse) -> None:
        future = self._pending.pop(response.id, None) if response.id is not None else None
        if future is None:
            logger.warning(event="unexpected_response", id=response.id, session_id=self.session.id)
            return
        if future.done():
            return
        if isinstance(response, JSONRPCErrorResponse):
            future.set_exception(RemoteError(response.error))
        else:
            future.set_result(response.result)

    # Outbound

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a server-initiated request and wait for the peer's result.

        Raises:
            SessionNotReadyError / SessionClosedError: session state forbids it.
            CapabilityNotSupportedError: the peer did not declare the capability.
            RemoteError: the peer answered with an error object.
            SessionClosedError: the session closed while waiting.
            asyncio.TimeoutError: no answer within the timeout.
        """
        self.session.require_ready()
        self.guard.authorize(method, self.session)

        request_id = f"srv-{next(self._request_ids)}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send(JSONRPCHandler.create_request(request_id, method, params))
            if timeout is None:
                timeout = self.request_timeout
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                event="request_timeout", method=method, id=request_id, session_id=self.session.id
            )
            if not self.session.is_terminal:
                await self._send(
                    JSONRPCHandler.create_notification(
                        MCPMethods.CANCEL, {"requestId": request_id, "reason": "timeout"}
                    )
                )
            raise
        finally:
            self._pending.pop(request_id, None)

    async def notify(
        self,
        kind: Union[NotificationKind, str],
        params: Optional[Dict[str, Any]] = None,
        uri: Optional[str] = None,
        level: Optional[Union[LoggingLevel, str]] = None,
    ) -> bool:
        """Send a gated notification. Returns False when the gate refused it."""
        kind = NotificationKind(kind)
        if not self.gate.guard_notify(kind, self.session, uri=uri, level=level):
            return False

        notification = JSONRPCHandler.create_notification(NOTIFICATION_METHODS[kind], params)
        try:
            await self._send(notification)
        except Exception as e:
            logger.error(
                event="notification_send_failed",
                kind=kind.value,
                session_id=self.session.id,
                error=str(e),
            )
            await self.close()
            return False
        return True

    async def notify_resource_updated(self, uri: str) -> bool:
        return await self.notify(NotificationKind.RESOURCE_UPDATED, {"uri": uri}, uri=uri)

    async def notify_resource_list_changed(self) -> bool:
        return await self.notify(NotificationKind.RESOURCE_LIST_CHANGED)

    async def notify_tools_changed(self) -> bool:
        return await self.notify(NotificationKind.TOOL_LIST_CHANGED)

    async def notify_prompts_changed(self) -> bool:
        return await self.notify(NotificationKind.PROMPT_LIST_CHANGED)

    async def send_logging_message(
        self,
        level: Union[LoggingLevel, str],
        data: Any,
        logger_name: Optional[str] = None,
    ) -> bool:
        """Send notifications/message if logging was declared and the level passes."""
        message = MCPLoggingMessageParams(level=LoggingLevel(level), data=data, logger=logger_name)
        return await self.notify(
            NotificationKind.LOG_MESSAGE,
            message.model_dump(exclude_none=True, mode="json"),
            level=message.level,
        )

    async def _send(self, message: Union[JSONRPCMessage, List[Any]]) -> None:
        payload = JSONRPCHandler.to_wire(message) if isinstance(message, BaseModel) else message
        log_wire_frame("outbound", payload, self.session.id)
        await self.transport.send_frame(JSONRPCHandler.encode_frame(payload))

    # Teardown

    def _protocol_violation(self, reason: str) -> None:
        error = ProtocolViolationError(reason)
        logger.warning(
            event="protocol_violation", session_id=self.session.id, code=error.code, reason=reason
        )
        self.session.fail(error.message)

    async def close(self) -> None:
        """
        Close the connection. Idempotent.

        Closes the session, cancels in-flight dispatch tasks and waits for
        them, fails every pending server-initiated request with
        ``SessionClosedError``, and tells the transport to close.
        """
        if self._closed:
            return
        self._closed = True
        self.session.close()

        current = asyncio.current_task()
        running = [task for task in self._tasks if task is not current]
        for task in running:
            task.cancel()

        for future in self._pending.values():
            if not future.done():
                future.set_exception(SessionClosedError())
        self._pending.clear()

        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._in_flight.clear()

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(event="transport_close_error", session_id=self.session.id, error=str(e))

        logger.info(
            event="connection_closed",
            session_id=self.session.id,
            state=self.session.state.value,
            reason=self.session.failure_reason,
        )

        if self._on_close is not None:
            self._on_close(self)


def _validate(model: type, params: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(params)
    except ValidationError as e:
        raise InvalidParamsError(
            f"Invalid params: {e.error_count()} validation error(s)",
            data={"errors": validation_details(e)},
        ) from e


def _request_id(data: Any) -> Optional[RequestId]:
    request_id = data.get("id") if isinstance(data, dict) else None
    return request_id if isinstance(request_id, (str, int)) else None


def _to_result(result: Any) -> Any:
    if result is None:
        return {}
    if isinstance(result, BaseModel):
        return result.model_dump(exclude_none=True, mode="json")
    return result
