"""
devtools.py -- target discovery over Chrome's DevTools HTTP endpoints
======================================================================

Chrome started with --remote-debugging-port exposes a small REST-like API
next to the CDP sockets:

  /json/version           browser metadata + webSocketDebuggerUrl (browser socket)
  /json/list              all targets (tabs, workers, ...) with their sockets
  /json/new?{url}         open a tab (PUT on current builds, GET on older ones)
  /json/activate/{id}     focus a tab
  /json/close/{id}        close a tab

The browser socket from /json/version is re-resolved on every use: the
browser may have been restarted between two calls and would then have a
new socket path.

Tab creation goes through an ordered list of strategies. Target.createTarget
over the browser socket is tried first (stable across Chrome versions), then
/json/new with PUT, then /json/new with GET -- but the GET retry only happens
when PUT was refused with 405 Method Not Allowed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .cdp import CdpClient
from .errors import (
    BrowserControlError,
    EndpointUnreachable,
    GenericUpstreamError,
    MalformedEndpointDescriptor,
    TargetCreationFailed,
)

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 1.5

# Target.createTarget returns before /json/list shows the new tab
TARGET_POLL_INTERVAL = 0.1
TARGET_POLL_DEADLINE = 2.0


class BrowserTab(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_id: str = Field(alias="targetId")
    title: str = ""
    url: str = ""
    ws_url: Optional[str] = Field(default=None, alias="wsUrl")
    type: Optional[str] = None

    @classmethod
    def from_devtools(cls, raw: Dict[str, Any], fallback_url: str = "") -> "BrowserTab":
        """Build from a /json/list or /json/new entry."""
        return cls(
            target_id=str(raw.get("id") or ""),
            title=raw.get("title") or "",
            url=raw.get("url") or fallback_url,
            ws_url=raw.get("webSocketDebuggerUrl"),
            type=raw.get("type"),
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class DevToolsEndpoint:
    """HTTP side of one remote-debugging port."""

    def __init__(self, port: int, host: str = "127.0.0.1",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.port = port
        self.host = host
        self.base_url = f"http://{host}:{port}"
        self._transport = transport
        self._client = self._new_client()

    @property
    def version_url(self) -> str:
        return f"{self.base_url}/json/version"

    def _new_client(self) -> httpx.AsyncClient:
        # trust_env=False: loopback calls must never go through an HTTP proxy
        return httpx.AsyncClient(transport=self._transport, trust_env=False)

    async def aclose(self) -> None:
        """Release pooled connections; the next request opens a new client."""
        await self._client.aclose()

    async def _request(self, path: str, method: str = "GET",
                       timeout: float = HTTP_TIMEOUT) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client.is_closed:
            self._client = self._new_client()
        try:
            resp = await self._client.request(method, url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise EndpointUnreachable(f"{method} {url} timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise EndpointUnreachable(f"{method} {url} failed: {e}") from e
        if not resp.is_success:
            raise GenericUpstreamError(resp.status_code, url)
        return resp

    async def _request_json(self, path: str, method: str = "GET",
                            timeout: float = HTTP_TIMEOUT) -> Any:
        resp = await self._request(path, method=method, timeout=timeout)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedEndpointDescriptor(f"{method} {path} returned invalid JSON") from e

    async def resolve_control_socket(self, timeout: float = HTTP_TIMEOUT) -> str:
        """Return the browser-level ws:// URL from /json/version."""
        try:
            version = await self._request_json("/json/version", timeout=timeout)
        except GenericUpstreamError as e:
            raise EndpointUnreachable(f"{self.version_url} answered HTTP {e.status}") from e

        ws_url = ""
        if isinstance(version, dict):
            ws_url = str(version.get("webSocketDebuggerUrl") or "").strip()
        if not ws_url:
            raise MalformedEndpointDescriptor("CDP /json/version missing webSocketDebuggerUrl")
        if not ws_url.startswith(("ws://", "wss://")):
            raise MalformedEndpointDescriptor(f"CDP /json/version has invalid webSocketDebuggerUrl: {ws_url}")
        return ws_url

    async def probe(self, timeout: float) -> bool:
        """True when something answers /json/version; never raises for I/O failures."""
        try:
            await self._request("/json/version", timeout=timeout)
            return True
        except BrowserControlError:
            return False

    async def list_tabs(self) -> List[BrowserTab]:
        raw = await self._request_json("/json/list")
        if not isinstance(raw, list):
            raise MalformedEndpointDescriptor("CDP /json/list did not return a list")
        tabs = [BrowserTab.from_devtools(t) for t in raw if isinstance(t, dict)]
        return [t for t in tabs if t.target_id]

    async def activate_tab(self, target_id: str) -> None:
        # Chrome answers plain text ("Target activated") under a JSON content-type
        await self._request(f"/json/activate/{quote(target_id, safe='')}")

    async def close_tab(self, target_id: str) -> None:
        # Same as activate: plain text body ("Target is closing")
        await self._request(f"/json/close/{quote(target_id, safe='')}")

    async def new_tab_via_http(self, url: str, method: str = "PUT") -> BrowserTab:
        created = await self._request_json(f"/json/new?{quote(url, safe='')}", method=method)
        if not isinstance(created, dict) or not created.get("id"):
            raise TargetCreationFailed("Failed to open tab (missing id)")
        return BrowserTab.from_devtools(created, fallback_url=url)


async def create_target_via_cdp(endpoint: DevToolsEndpoint, url: str) -> str:
    """Target.createTarget over the browser-level socket; returns the new targetId."""
    ws_url = await endpoint.resolve_control_socket()
    cdp = await CdpClient.connect(ws_url)
    try:
        created = await cdp.send("Target.createTarget", {"url": url})
        target_id = ""
        if isinstance(created, dict):
            target_id = str(created.get("targetId") or "").strip()
        if not target_id:
            err = TargetCreationFailed("CDP Target.createTarget returned no targetId")
            await cdp.close_with_error(err)
            raise err
        return target_id
    finally:
        await cdp.close()


async def wait_for_tab(endpoint: DevToolsEndpoint, target_id: str, url: str,
                       interval: float = TARGET_POLL_INTERVAL,
                       deadline: float = TARGET_POLL_DEADLINE) -> BrowserTab:
    """Poll /json/list until `target_id` shows up.

    The target exists once createTarget returned, so running out of time
    yields a best-effort record instead of an error.
    """
    loop = asyncio.get_running_loop()
    stop_at = loop.time() + deadline
    while loop.time() < stop_at:
        try:
            tabs = await endpoint.list_tabs()
        except BrowserControlError as e:
            logger.debug(f"list_tabs while waiting for {target_id}: {e}")
            tabs = []
        for tab in tabs:
            if tab.target_id == target_id:
                return tab
        await asyncio.sleep(interval)
    logger.info(f"Target {target_id} not listed after {deadline}s, returning partial record")
    return BrowserTab(target_id=target_id, title="", url=url, type=None)


# =============================================================================
# TAB CREATION STRATEGIES
# =============================================================================

@dataclass
class StrategyFailure:
    strategy: str
    error: Exception


class TabCreationStrategy:
    name = "base"

    async def create(self, endpoint: DevToolsEndpoint, url: str) -> BrowserTab:
        raise NotImplementedError

    def falls_through(self, error: Exception) -> bool:
        """Whether the next strategy may be tried after `error`."""
        return True


class CdpTargetStrategy(TabCreationStrategy):
    name = "cdp"

    def __init__(self, poll_interval: float = TARGET_POLL_INTERVAL,
                 poll_deadline: float = TARGET_POLL_DEADLINE):
        self.poll_interval = poll_interval
        self.poll_deadline = poll_deadline

    async def create(self, endpoint: DevToolsEndpoint, url: str) -> BrowserTab:
        target_id = await create_target_via_cdp(endpoint, url)
        return await wait_for_tab(endpoint, target_id, url,
                                  interval=self.poll_interval, deadline=self.poll_deadline)


class HttpNewTabStrategy(TabCreationStrategy):
    def __init__(self, method: str, fall_through_statuses: Iterable[int] = ()):
        self.method = method.upper()
        self.fall_through_statuses = frozenset(fall_through_statuses)
        self.name = f"http-{self.method.lower()}"

    async def create(self, endpoint: DevToolsEndpoint, url: str) -> BrowserTab:
        return await endpoint.new_tab_via_http(url, method=self.method)

    def falls_through(self, error: Exception) -> bool:
        return isinstance(error, GenericUpstreamError) and error.status in self.fall_through_statuses


def default_strategies() -> List[TabCreationStrategy]:
    return [
        CdpTargetStrategy(),
        # Chrome changed /json/new to require PUT; older builds answer 405 to it
        HttpNewTabStrategy("PUT", fall_through_statuses=(405,)),
        HttpNewTabStrategy("GET"),
    ]


async def open_tab(endpoint: DevToolsEndpoint, url: str,
                   strategies: Optional[Sequence[TabCreationStrategy]] = None,
                   failures: Optional[List[StrategyFailure]] = None) -> BrowserTab:
    """Open `url` in a new tab, trying each strategy in order.

    Failed attempts are appended to `failures` when a list is given. The
    error of the last strategy tried, or of one that does not fall through,
    is re-raised unchanged.
    """
    strategies = list(strategies) if strategies is not None else default_strategies()
    if not strategies:
        raise TargetCreationFailed("No tab creation strategy configured")
    if failures is None:
        failures = []

    for i, strategy in enumerate(strategies):
        try:
            return await strategy.create(endpoint, url)
        except Exception as e:
            failures.append(StrategyFailure(strategy.name, e))
            if i == len(strategies) - 1 or not strategy.falls_through(e):
                raise
            logger.info(f"Tab creation via {strategy.name} failed ({e}); trying {strategies[i + 1].name}")
