import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import (
    DuplicateIdError,
    RequestTimeoutError,
    ResponseError,
    UnmatchedResponseError,
)
from .ids import IdAllocator


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None
    on_result: Callable[[Any], None] | None = None


class CorrelationTable:
    """Maps in-flight request ids to the futures awaiting their responses.

    Every registered entry settles exactly once: by its response, by its
    timeout, by the caller cancelling the future, or by ``fail_all``. After
    that the id is spent and any later response for it is unmatched.
    """

    def __init__(self, allocator: IdAllocator | None = None):
        self.allocator = allocator or IdAllocator()
        self.logger = logging.getLogger(__name__)
        self._entries: dict[int, PendingRequest] = {}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, request_id):
        return request_id in self._entries

    @property
    def pending(self) -> list[int]:
        return list(self._entries)

    def next_id(self) -> int:
        return self.allocator.next()

    def get(self, request_id) -> PendingRequest | None:
        return self._entries.get(request_id)

    def register(
        self,
        request_id: int,
        method: str,
        timeout: float | None = None,
        on_result: Callable[[Any], None] | None = None,
    ) -> asyncio.Future:
        """Track a request about to be written.

        ``on_result`` runs with the result as the response is resolved, before
        the next inbound message is dispatched. If it raises, the future fails
        with that error.
        """
        if request_id in self._entries:
            raise DuplicateIdError(
                "Request id is already pending", request_id=request_id, method=method
            )

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id, method, loop.create_future(), on_result=on_result
        )
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._expire, entry, timeout)
        entry.future.add_done_callback(lambda _: self._discard(entry))
        self._entries[request_id] = entry
        return entry.future

    def resolve(self, response: dict[str, Any]):
        request_id = response.get("id")
        entry = self._entries.pop(request_id, None)
        if entry is None:
            raise UnmatchedResponseError(
                "Response for unknown or already settled id",
                request_id=request_id,
                payload=response,
            )
        self._cancel_timer(entry)
        if entry.future.done():
            raise UnmatchedResponseError(
                "Response for a request the caller already abandoned",
                request_id=request_id,
                method=entry.method,
                payload=response,
            )

        elapsed = time.monotonic() - entry.issued_at
        self.logger.debug(
            f"Resolved {entry.method} id={request_id} after {elapsed:.3f}s"
        )
        if "error" in response:
            entry.future.set_exception(
                ResponseError(
                    response["error"], request_id=request_id, method=entry.method
                )
            )
        else:
            result = response.get("result")
            if entry.on_result is not None:
                try:
                    entry.on_result(result)
                except Exception as e:
                    entry.future.set_exception(e)
                    return
            entry.future.set_result(result)

    def fail_all(self, exc_factory):
        """Fail every pending entry with ``exc_factory(entry)`` and empty the table."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            self._cancel_timer(entry)
            if not entry.future.done():
                entry.future.set_exception(exc_factory(entry))
        return len(entries)

    def _expire(self, entry: PendingRequest, timeout: float):
        if self._entries.get(entry.id) is not entry:
            return
        del self._entries[entry.id]
        entry.timer = None
        self.logger.warning(
            f"Request {entry.method} id={entry.id} timed out after {timeout}s"
        )
        if not entry.future.done():
            entry.future.set_exception(
                RequestTimeoutError(
                    f"No response within {timeout}s",
                    request_id=entry.id,
                    method=entry.method,
                )
            )

    def _discard(self, entry: PendingRequest):
        # Only reached with the entry still present when the caller cancelled.
        if self._entries.get(entry.id) is entry:
            del self._entries[entry.id]
            self._cancel_timer(entry)
            self.logger.debug(f"Request {entry.method} id={entry.id} was cancelled")

    @staticmethod
    def _cancel_timer(entry: PendingRequest):
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
