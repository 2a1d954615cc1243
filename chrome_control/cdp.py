"""
cdp.py -- asynchronous Chrome DevTools Protocol client
=======================================================

CDP is a JSON-RPC-like protocol over WebSocket. Each command is sent as:
  {"id": N, "method": "Domain.method", "params": {...}}
And Chrome responds with:
  {"id": N, "result": {...}}              -- on success
  {"id": N, "error": {"message": "..."}}  -- on failure
Frames without an "id" are protocol events and are ignored here.

Unlike a blocking client that reads until it sees its own id, CdpClient runs
one reader task per socket and resolves a Future per request id, so several
callers can have commands in flight on the same socket at once.

Usage:
    async with await CdpClient.connect(ws_url) as cdp:
        await cdp.send("Page.enable")
        metrics = await cdp.send("Page.getLayoutMetrics")
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import CdpConnectionError, CommandFailed, CommandTimeout, SocketClosed

logger = logging.getLogger(__name__)

# Handshake bound for ws:// control sockets
HANDSHAKE_TIMEOUT = 5.0

# Full-page screenshots arrive as a single base64 frame
MAX_FRAME_SIZE = 64 * 1024 * 1024


class CdpClient:
    """One WebSocket to a browser or target, with id-correlated requests."""

    def __init__(self, ws, ws_url: str = ""):
        self.ws_url = ws_url
        self._ws = ws
        self._next_id = 1
        self._pending: Dict[int, asyncio.Future] = {}
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def connect(cls, ws_url: str, handshake_timeout: float = HANDSHAKE_TIMEOUT) -> "CdpClient":
        try:
            ws = await ws_connect(
                ws_url,
                open_timeout=handshake_timeout,
                max_size=MAX_FRAME_SIZE,
                proxy=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise CdpConnectionError(f"CDP connect to {ws_url} failed: {e}") from e
        logger.debug(f"CDP connected: {ws_url}")
        return cls(ws, ws_url)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Any:
        """
        Send a CDP command and wait for its result.

        The pending entry is registered before the frame is written so a fast
        response can never arrive ahead of its Future. Whatever happens to the
        caller (result, error, timeout, cancellation) the entry is gone when
        this returns.

        Raises:
            SocketClosed: the socket closed before the response arrived.
            CommandFailed: Chrome answered with an error object.
            CommandTimeout: no response within `timeout` seconds.
        """
        if self._closed:
            raise SocketClosed()

        msg_id = self._next_id
        cmd: Dict[str, Any] = {"id": msg_id, "method": method}
        if params is not None:
            cmd["params"] = params
        # unserializable params fail here, before anything is registered
        frame = json.dumps(cmd)

        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future

        try:
            await self._ws.send(frame)
        except BaseException as e:
            self._pending.pop(msg_id, None)
            _discard(future)
            if isinstance(e, ConnectionClosed):
                raise SocketClosed() from e
            raise

        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise CommandTimeout(method, timeout) from None
        finally:
            self._pending.pop(msg_id, None)

    async def close(self) -> None:
        await self.close_with_error(SocketClosed())

    async def close_with_error(self, err: Exception) -> None:
        """Fail every pending request with `err`, then close the socket.

        Safe to call more than once and on a socket that is already closing.
        """
        self._fail_pending(err)
        self._closed = True
        try:
            await self._ws.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"CDP close ignored: {e}")
        await asyncio.gather(self._reader, return_exceptions=True)

    async def __aenter__(self) -> "CdpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.debug(f"CDP socket closed: {e}")
        finally:
            self._closed = True
            self._fail_pending(SocketClosed())

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Dropping malformed CDP frame")
            return
        if not isinstance(message, dict):
            return

        msg_id = message.get("id")
        # bool is an int subclass
        if not isinstance(msg_id, int) or isinstance(msg_id, bool):
            return
        future = self._pending.pop(msg_id, None)
        if future is None or future.done():
            return

        error = message.get("error")
        if isinstance(error, dict) and error.get("message"):
            future.set_exception(CommandFailed(str(error["message"])))
            return
        future.set_result(message.get("result"))

    def _fail_pending(self, err: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(err)


def _discard(future: asyncio.Future) -> None:
    if not future.done():
        future.cancel()
    elif not future.cancelled():
        future.exception()
