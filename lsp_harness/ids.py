from .errors import IdSpaceExhaustedError

# LSP `integer` is a signed 32-bit value.
MAX_ID = 2**31 - 1


class IdAllocator:
    """Issues strictly increasing request ids for one session.

    Ids start at 1 by default; no value is reserved, and ``start`` can move the
    first id higher. Ids are never reused. Once the next id would leave the LSP
    integer range the allocator raises instead of wrapping around.
    """

    def __init__(self, start: int = 1, limit: int = MAX_ID):
        if start > limit:
            raise ValueError(f"start {start} exceeds limit {limit}")
        self._next = start
        self._issued = False
        self.limit = limit

    @property
    def last(self) -> int | None:
        """The most recently issued id, or None before the first call."""
        return self._next - 1 if self._issued else None

    def next(self) -> int:
        if self._next > self.limit:
            raise IdSpaceExhaustedError(
                f"Request id space exhausted after {self.limit}"
            )
        current = self._next
        self._next += 1
        self._issued = True
        return current
