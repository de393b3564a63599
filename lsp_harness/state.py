import enum
import logging
from types import MappingProxyType
from typing import Any, Mapping

from .errors import IllegalStateError


class SessionState(enum.Enum):
    UNSTARTED = "unstarted"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    SHUTTING_DOWN = "shutting down"
    TERMINATED = "terminated"


class SessionStateMachine:
    """Client side of the LSP lifecycle.

    Each ``before_*`` hook is called before a message is written. It either
    raises ``IllegalStateError``, leaving the state untouched, or performs the
    transition. No message is written when a hook raises.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.state = SessionState.UNSTARTED
        self._capabilities: Mapping[str, Any] | None = None
        self._initialized_sent = False

    @property
    def capabilities(self) -> Mapping[str, Any] | None:
        return self._capabilities

    @property
    def is_initialized(self) -> bool:
        return self.state is SessionState.INITIALIZED

    def _move(self, new_state: SessionState):
        if new_state is not self.state:
            self.logger.info(f"Session state {self.state.value} -> {new_state.value}")
            self.state = new_state

    def _reject(self, what: str, method: str):
        raise IllegalStateError(
            f"Cannot send {what} while session is {self.state.value}", method=method
        )

    def before_request(self, method: str):
        if method == "initialize":
            if self.state is not SessionState.UNSTARTED:
                self._reject("initialize", method)
            self._move(SessionState.INITIALIZING)
        elif method == "shutdown":
            if self.state is not SessionState.INITIALIZED:
                self._reject("shutdown", method)
            self._move(SessionState.SHUTTING_DOWN)
        elif self.state is not SessionState.INITIALIZED:
            self._reject("request", method)

    def before_notification(self, method: str) -> bool:
        """Check a notification; returns False when it must be skipped."""
        if self.state is SessionState.TERMINATED:
            self._reject("notification", method)

        if method == "initialized":
            if self.state is not SessionState.INITIALIZED:
                self._reject("initialized", method)
            if self._initialized_sent:
                self.logger.debug("Skipping repeated initialized notification")
                return False
            self._initialized_sent = True
        elif method == "exit":
            self._move(SessionState.TERMINATED)
        elif self.state is not SessionState.INITIALIZED:
            self._reject("notification", method)
        return True

    def before_reply(self, method: str):
        if self.state is SessionState.TERMINATED:
            self._reject("reply", method)

    def initialize_succeeded(self, result: Any):
        if self.state is not SessionState.INITIALIZING:
            self._reject("initialize result", "initialize")
        capabilities = {}
        if isinstance(result, dict):
            capabilities = result.get("capabilities") or {}
        self._capabilities = MappingProxyType(dict(capabilities))
        self._move(SessionState.INITIALIZED)

    def initialize_failed(self):
        if self.state is SessionState.INITIALIZING:
            self._move(SessionState.UNSTARTED)

    def shutdown(self):
        """Abort-style shutdown from whatever state the session is in."""
        if self.state is SessionState.INITIALIZED:
            self._move(SessionState.SHUTTING_DOWN)
        else:
            self._move(SessionState.TERMINATED)

    def terminate(self):
        self._move(SessionState.TERMINATED)
