"""
Request/response correlation.

Every command sent to Home Assistant carries an integer ``id``; the matching
``result`` frame echoes it back. The registry maps each outstanding id to the
Future its caller is awaiting and fails that Future if no result arrives in
time.

Each registered id leaves the registry exactly once, through one of:
    - resolve() / handle_result() with success
    - reject() / handle_result() with a server error
    - its timeout firing
    - clear() when the connection is lost
    - the awaiting caller cancelling its Future
"""

import asyncio
import logging
from typing import Any, Dict, Iterator, NamedTuple, Optional, Union

from .errors import CommandError, RequestTimeoutError, TransportError
from .messages import ResultMessage


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class PendingRequest(NamedTuple):
    id: int
    future: asyncio.Future
    timer: asyncio.TimerHandle
    deadline: float


class CallbackRegistry:
    """Pending requests indexed by id."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout
        self._pending: Dict[int, PendingRequest] = {}

    def register(self, request_id: int, timeout: Optional[float] = None) -> asyncio.Future:
        """
        Start tracking ``request_id`` and return the Future its result will land in.

        Must be called before the request frame is transmitted, so a fast
        reply can never arrive for an unknown id.

        Raises:
            ValueError: if ``request_id`` is already pending
        """
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already pending")

        if timeout is None:
            timeout = self.default_timeout

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, future, timeout)
        self._pending[request_id] = PendingRequest(
            request_id, future, timer, loop.time() + timeout
        )

        # The caller may give up on its own (task cancelled, wait_for timeout)
        future.add_done_callback(lambda f: self._discard(request_id, f))
        return future

    def resolve(self, request_id: int, payload: Any = None) -> bool:
        """Complete a request successfully. Unknown ids are ignored."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(payload)
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        """Fail a request. Unknown ids are ignored."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def handle_result(self, message: ResultMessage) -> bool:
        """Route a decoded ``result`` frame to its pending request."""
        if message.id not in self._pending:
            logger.debug(f"Ignoring result for unknown request id {message.id}")
            return False

        if message.success:
            return self.resolve(message.id, message.result)

        if message.error is not None:
            error = CommandError(message.error.code, message.error.message)
        else:
            error = CommandError("unknown_error", "Unknown HA Error")
        return self.reject(message.id, error)

    def clear(self, reason: Union[BaseException, str] = "Connection terminated") -> int:
        """
        Fail every pending request with ``reason`` and empty the registry.

        Returns:
            How many requests were failed
        """
        if isinstance(reason, str):
            reason = TransportError(reason)

        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(reason)

        if pending:
            logger.debug(f"Cleared {len(pending)} pending request(s): {reason}")
        return len(pending)

    def _take(self, request_id: int) -> Optional[PendingRequest]:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: int, future: asyncio.Future, timeout: float) -> None:
        entry = self._pending.get(request_id)
        if entry is None or entry.future is not future:
            return
        logger.warning(f"Request {request_id} timed out after {timeout:g}s")
        self.reject(request_id, RequestTimeoutError(request_id, timeout))

    def _discard(self, request_id: int, future: asyncio.Future) -> None:
        entry = self._pending.get(request_id)
        if entry is not None and entry.future is future:
            self._take(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._pending))
