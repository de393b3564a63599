from typing import Any


class HarnessError(Exception):
    """Base class for every failure the harness reports.

    The optional ``request_id``, ``method`` and ``payload`` attributes carry the
    offending message so a failing test can show what went wrong.
    """

    def __init__(
        self,
        message: str,
        *,
        request_id: int | None = None,
        method: str | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.request_id = request_id
        self.method = method
        self.payload = payload

    def __str__(self):
        text = super().__str__()
        context = []
        if self.request_id is not None:
            context.append(f"id={self.request_id}")
        if self.method is not None:
            context.append(f"method={self.method}")
        if context:
            text = f"{text} ({', '.join(context)})"
        if self.payload is not None:
            text = f"{text}: {self.payload!r}"
        return text


class SpawnError(HarnessError):
    pass


class IllegalStateError(HarnessError):
    pass


class DuplicateIdError(HarnessError):
    pass


class IdSpaceExhaustedError(HarnessError):
    pass


class UnmatchedResponseError(HarnessError):
    pass


class MalformedMessageError(HarnessError):
    pass


class RequestTimeoutError(HarnessError, TimeoutError):
    pass


class SessionTerminatedError(HarnessError):
    pass


class ResponseError(HarnessError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, error: dict[str, Any], *, request_id=None, method=None):
        self.code = error.get("code")
        self.error_message = error.get("message", "")
        self.data = error.get("data")
        super().__init__(
            f"Server error {self.code}: {self.error_message}",
            request_id=request_id,
            method=method,
            payload=error,
        )
