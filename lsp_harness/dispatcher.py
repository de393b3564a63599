import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable

from .correlation import CorrelationTable
from .errors import HarnessError, MalformedMessageError, UnmatchedResponseError

NotificationHandler = Callable[[dict[str, Any] | None], Awaitable[None] | None]
RequestHandler = Callable[[dict[str, Any] | None], Any]

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class MessageKind(enum.Enum):
    RESPONSE = "response"
    NOTIFICATION = "notification"
    REQUEST = "request"
    MALFORMED = "malformed"


def classify(message: Any) -> MessageKind:
    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
        return MessageKind.MALFORMED

    has_id = "id" in message
    has_method = isinstance(message.get("method"), str)
    has_result = "result" in message
    has_error = "error" in message

    if has_id and (has_result or has_error):
        if has_method or (has_result and has_error):
            return MessageKind.MALFORMED
        if has_error and not isinstance(message["error"], dict):
            return MessageKind.MALFORMED
        return MessageKind.RESPONSE
    if has_method and not has_id:
        return MessageKind.NOTIFICATION
    if has_method and has_id:
        return MessageKind.REQUEST
    return MessageKind.MALFORMED


def _null_reply(params):
    return None


def _configuration_reply(params):
    return [None] * len((params or {}).get("items", []))


DEFAULT_REQUEST_HANDLERS: dict[str, RequestHandler] = {
    "workspace/configuration": _configuration_reply,
    "window/workDoneProgress/create": _null_reply,
    "window/showMessageRequest": _null_reply,
    "client/registerCapability": _null_reply,
    "client/unregisterCapability": _null_reply,
}


class Dispatcher:
    """Routes every inbound message to the place that owns it.

    Responses settle entries of the correlation table, notifications go to
    per-method handlers, and server-initiated requests always get exactly one
    reply through ``reply``. Anomalies are logged and kept in ``anomalies``
    without interrupting the session.
    """

    def __init__(
        self,
        table: CorrelationTable,
        reply: Callable[[dict[str, Any]], Awaitable[None]],
    ):
        self.table = table
        self.reply = reply
        self.logger = logging.getLogger(__name__)

        self.notification_handlers: dict[str, NotificationHandler] = {}
        self.request_handlers: dict[str, RequestHandler] = dict(
            DEFAULT_REQUEST_HANDLERS
        )
        self.notifications: list[dict[str, Any]] = []
        self.server_requests: list[dict[str, Any]] = []
        self.anomalies: list[HarnessError] = []

    def register_notification_handler(self, method: str, handler: NotificationHandler):
        """Handlers run on the single inbound consumer, so a coroutine handler
        must not await a response of its own: that response is queued behind it
        and the request can only time out. Spawn a task for such work instead.
        """
        self.notification_handlers[method] = handler

    def register_request_handler(self, method: str, handler: RequestHandler):
        """The return value becomes the reply result; an exception becomes an
        internal error reply. Same consumer constraint as notification handlers.
        """
        self.request_handlers[method] = handler

    async def dispatch(self, message: Any):
        kind = classify(message)
        if kind is MessageKind.RESPONSE:
            self._handle_response(message)
        elif kind is MessageKind.NOTIFICATION:
            await self._handle_notification(message)
        elif kind is MessageKind.REQUEST:
            await self._handle_request(message)
        else:
            error = MalformedMessageError("Dropping malformed message", payload=message)
            self.logger.warning(str(error))
            self.anomalies.append(error)

    def _handle_response(self, message: dict[str, Any]):
        try:
            self.table.resolve(message)
        except UnmatchedResponseError as e:
            self.logger.warning(str(e))
            self.anomalies.append(e)

    async def _handle_notification(self, message: dict[str, Any]):
        method = message["method"]
        self.notifications.append(message)
        handler = self.notification_handlers.get(method)
        if not handler:
            self.logger.debug(f"Received unhandled notification: {method}")
            return
        try:
            result = handler(message.get("params"))
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.logger.error(f"Error in notification handler for {method}: {e}")

    async def _handle_request(self, message: dict[str, Any]):
        method = message["method"]
        request_id = message["id"]
        self.server_requests.append(message)
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}

        handler = self.request_handlers.get(method)
        if handler is None:
            self.logger.warning(f"Unhandled server request {method} id={request_id}")
            reply["error"] = {
                "code": METHOD_NOT_FOUND,
                "message": f"Unhandled method {method}",
            }
        else:
            try:
                result = handler(message.get("params"))
                if asyncio.iscoroutine(result):
                    result = await result
                reply["result"] = result
            except Exception as e:
                self.logger.error(f"Error in request handler for {method}: {e}")
                reply["error"] = {"code": INTERNAL_ERROR, "message": str(e)}

        try:
            await self.reply(reply)
        except (HarnessError, ConnectionError) as e:
            self.logger.error(f"Cannot answer server request {method} id={request_id}: {e}")
