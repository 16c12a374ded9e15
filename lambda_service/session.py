"""
Request/response correlation for JSON-RPC over a stdio transport.

Every outgoing request gets the next integer id and an entry in the
pending table: a future for the caller plus the armed timeout. The entry
is removed exactly once, by whichever comes first:

    response with matching id  → future gets result / RpcError
    timeout fires              → future gets RpcTimeoutError
    process exits              → future gets TransportClosedError

The loser finds no entry and does nothing, so a caller is never resolved
twice. Responses may arrive in any order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from lambda_service.errors import RpcError, RpcTimeoutError
from lambda_service.transport import JsonRpcRequest, JsonRpcResponse, StdioTransport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0


@dataclass
class PendingRequest:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class RpcSession:
    """Request/response correlation over a StdioTransport."""

    def __init__(self, transport: StdioTransport, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.transport = transport
        self.timeout = timeout
        self._request_id = 0
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_id(self) -> int:
        """Generate the next request ID."""
        self._request_id += 1
        return self._request_id

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """
        Send a request and wait for its response.

        Returns:
            The response's ``result`` member.

        Raises:
            RpcError: the response carried an ``error``.
            RpcTimeoutError: no response within ``self.timeout`` seconds.
            TransportClosedError: the process went away first.
        """
        loop = asyncio.get_running_loop()
        request = JsonRpcRequest(method=method, params=params or {}, id=self.next_id())
        future = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, request.id)
        self._pending[request.id] = PendingRequest(method, future, timer)

        try:
            await self.transport.send(request.to_dict())
            return await future
        finally:
            # No-op when the entry was already settled.
            self._take(request.id)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""
        await self.transport.send(JsonRpcRequest(method=method, params=params or {}).to_dict())

    def handle_message(self, message: dict[str, Any]) -> None:
        """Route an incoming message to its pending request, if any."""
        # Server-initiated requests and notifications carry a method.
        if not isinstance(message, dict) or message.get("id") is None or "method" in message:
            logger.debug(f"Ignoring unsolicited message: {message}")
            return

        if not isinstance(message["id"], (int, str)) or isinstance(message["id"], bool):
            logger.debug(f"Ignoring response with unusable id {message['id']!r}")
            return

        response = JsonRpcResponse.from_dict(message)
        entry = self._take(response.id)
        if entry is None:
            logger.debug(f"Ignoring response for unknown request id {response.id}")
            return

        if response.is_error:
            error = response.error if isinstance(response.error, dict) else {"message": str(response.error)}
            text = error.get("message") or json.dumps(error)
            self._settle(entry.future, exception=RpcError(text, error))
        else:
            self._settle(entry.future, result=response.result)

    def fail_all(self, exc: BaseException) -> None:
        """Reject every pending request with ``exc``."""
        for request_id in list(self._pending):
            entry = self._take(request_id)
            if entry:
                self._settle(entry.future, exception=exc)

    def _expire(self, request_id: int) -> None:
        entry = self._take(request_id)
        if entry is None:
            return
        logger.warning(f"Request {request_id} ({entry.method}) timed out after {self.timeout:g}s")
        self._settle(entry.future, exception=RpcTimeoutError(entry.method, self.timeout))

    def _take(self, request_id: Any) -> PendingRequest | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
        return entry

    @staticmethod
    def _settle(future: asyncio.Future, result: Any = None, exception: BaseException | None = None) -> None:
        if future.done():
            return
        if exception is not None:
            future.set_exception(exception)
        else:
            future.set_result(result)
