import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

from .correlation import CorrelationTable
from .dispatcher import Dispatcher, NotificationHandler, RequestHandler
from .errors import (
    HarnessError,
    IllegalStateError,
    RequestTimeoutError,
    SessionTerminatedError,
)
from .ids import IdAllocator
from .state import SessionState, SessionStateMachine
from .transport import LSPTransport

DEFAULT_TIMEOUT = 5.0


class OpeningFile:
    def __init__(self, content: str, version: int = 0):
        self.version = version
        self.content = content


class LanguageServerSession:
    """One harness session driving exactly one language server.

    Requests are written only when the lifecycle allows them, and each one
    returns the result of its own matching response.
    """

    def __init__(
        self,
        commands: list[str],
        mode="pipe",
        host="127.0.0.1",
        port=2087,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_on_timeout: bool = True,
        transport: LSPTransport | None = None,
        allocator: IdAllocator | None = None,
    ):
        self.transport = transport or LSPTransport(commands, mode, host, port)
        self.timeout = timeout
        self.cancel_on_timeout = cancel_on_timeout
        self.logger = logging.getLogger(__name__)

        self.table = CorrelationTable(allocator)
        self.lifecycle = SessionStateMachine()
        self.dispatcher = Dispatcher(self.table, self._send_reply)
        self.transport.on_message(self.dispatcher.dispatch)
        self.transport.on_close(self._on_transport_closed)

        self.opening_files: dict[str, OpeningFile] = {}

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    @property
    def server_capabilities(self) -> Mapping[str, Any] | None:
        return self.lifecycle.capabilities

    @property
    def anomalies(self):
        return self.dispatcher.anomalies

    @property
    def notifications(self):
        return self.dispatcher.notifications

    async def start(self):
        await self.transport.start()

    async def stop(self):
        """Abort the session: kill the server and fail whatever is still pending."""
        self.lifecycle.shutdown()
        await self.transport.stop()

    def _on_transport_closed(self):
        count = self.table.fail_all(
            lambda entry: SessionTerminatedError(
                "Session terminated with request pending",
                request_id=entry.id,
                method=entry.method,
            )
        )
        if count:
            self.logger.warning(f"Failed {count} pending request(s) on session end")
        self.lifecycle.terminate()

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        on_result: Callable[[Any], None] | None = None,
    ) -> Any:
        self.lifecycle.before_request(method)
        request_id = self.table.next_id()
        message = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params if params is not None else {},
        }
        future = self.table.register(
            request_id,
            method,
            self.timeout if timeout is None else timeout,
            on_result,
        )
        try:
            await self.transport.send(message)
        except BaseException:
            future.cancel()
            raise

        try:
            return await future
        except RequestTimeoutError:
            if self.cancel_on_timeout and self.lifecycle.is_initialized:
                try:
                    await self.send_notification("$/cancelRequest", {"id": request_id})
                except ConnectionError as e:
                    self.logger.warning(f"Cannot cancel request id={request_id}: {e}")
            raise

    async def send_notification(
        self, method: str, params: dict[str, Any] | None = None
    ):
        if not self.lifecycle.before_notification(method):
            return
        message = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else {},
        }
        await self.transport.send(message)

    async def _send_reply(self, message: dict[str, Any]):
        self.lifecycle.before_reply(f"reply to id={message.get('id')}")
        await self.transport.send(message)

    def register_notification_handler(self, method: str, handler: NotificationHandler):
        self.dispatcher.register_notification_handler(method, handler)

    def register_request_handler(self, method: str, handler: RequestHandler):
        self.dispatcher.register_request_handler(method, handler)

    async def initialize(
        self,
        workspace: str | os.PathLike | None = None,
        capabilities: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        root = Path(workspace or os.getcwd()).resolve()
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": "lsp-harness", "version": "0.1.0"},
            "rootUri": root.as_uri(),
            "capabilities": capabilities or {},
            "workspaceFolders": [{"uri": root.as_uri(), "name": root.name or "root"}],
        }
        try:
            result = await self.send_request(
                "initialize", params, on_result=self.lifecycle.initialize_succeeded
            )
        except IllegalStateError:
            raise
        except BaseException:
            # No-op once the response has moved the session to INITIALIZED.
            self.lifecycle.initialize_failed()
            raise
        if isinstance(result, dict):
            self.logger.info(f"initialize result keys = {list(result)}")
        return result

    async def initialized(self):
        await self.send_notification("initialized")

    async def shutdown(self):
        return await self.send_request("shutdown", None)

    async def exit(self):
        """Orderly teardown: shutdown and exit when possible, then stop."""
        try:
            if self.lifecycle.is_initialized:
                await self.shutdown()
            if self.state is not SessionState.TERMINATED:
                await self.send_notification("exit")
        except (HarnessError, ConnectionError) as e:
            self.logger.warning(f"Orderly shutdown failed: {e}")
        finally:
            await self.stop()

    async def did_open(
        self, uri: str, text: str, language_id: str = "plaintext", version: int = 0
    ):
        if uri in self.opening_files:
            raise RuntimeError(f"Cannot open same file multiple times: {uri}")

        params = {
            "textDocument": {
                "uri": uri,
                "languageId": language_id,
                "version": version,
                "text": text,
            }
        }
        await self.send_notification("textDocument/didOpen", params)
        self.opening_files[uri] = OpeningFile(text, version)

    async def did_change(self, uri: str, content: str):
        if uri not in self.opening_files:
            raise RuntimeError(f"Cannot change closed file: {uri}")

        file = self.opening_files[uri]
        params = {
            "textDocument": {"uri": uri, "version": file.version + 1},
            "contentChanges": [{"text": content}],
        }
        await self.send_notification("textDocument/didChange", params)
        file.version += 1
        file.content = content

    async def did_close(self, uri: str):
        if uri not in self.opening_files:
            raise RuntimeError(f"Cannot close file that is not open: {uri}")
        await self.send_notification(
            "textDocument/didClose", {"textDocument": {"uri": uri}}
        )
        del self.opening_files[uri]

    @staticmethod
    def _position_params(uri: str, line: int, character: int):
        return {
            "textDocument": {"uri": uri},
            "position": {"line": line, "character": character},
        }

    async def completion(self, uri: str, line: int, character: int):
        return await self.send_request(
            "textDocument/completion", self._position_params(uri, line, character)
        )

    async def hover(self, uri: str, line: int, character: int):
        return await self.send_request(
            "textDocument/hover", self._position_params(uri, line, character)
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

