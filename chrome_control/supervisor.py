"""
Browser lifecycle supervisor.

Owns the one process-wide RunningChrome slot:

    absent --ensure_reachable()--> launching --> running --exit/stop()--> absent

Concurrent ensure_reachable() calls share a single in-flight task, so two
simultaneous /start requests launch at most one browser.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .chrome import RunningChrome, launch_chrome, stop_chrome
from .config import BrowserConfig
from .devtools import DevToolsEndpoint
from .errors import AttachOnlyNoBrowser

logger = logging.getLogger(__name__)

REACHABLE_TIMEOUT = 0.5

Launcher = Callable[[BrowserConfig, DevToolsEndpoint], Awaitable[RunningChrome]]
Stopper = Callable[[RunningChrome], Awaitable[None]]


class BrowserSupervisor:
    def __init__(self, config: BrowserConfig, endpoint: DevToolsEndpoint,
                 launcher: Launcher = launch_chrome, stopper: Stopper = stop_chrome):
        self.config = config
        self.endpoint = endpoint
        self._launcher = launcher
        self._stopper = stopper
        self._running: Optional[RunningChrome] = None
        self._inflight: Optional[asyncio.Task] = None
        self._watchers = set()

    @property
    def running(self) -> Optional[RunningChrome]:
        return self._running

    @property
    def launching(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def is_reachable(self, timeout: float = REACHABLE_TIMEOUT) -> bool:
        return await self.endpoint.probe(timeout=timeout)

    async def ensure_reachable(self) -> None:
        """Make sure a browser answers on the CDP port, launching one if allowed.

        Raises:
            AttachOnlyNoBrowser: nothing is listening and attach_only is set.
            BrowserLaunchFailed: the launch did not produce a reachable browser.
        """
        if self._inflight is None or self._inflight.done():
            task = asyncio.ensure_future(self._ensure())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        # shield: one caller giving up must not cancel the launch for the others
        await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # retrieved by the awaiting callers; mark it so orphans don't warn
            task.exception()

    async def _ensure(self) -> None:
        if await self.is_reachable():
            return
        if self.config.attach_only:
            raise AttachOnlyNoBrowser()

        stale = self._running
        if stale is not None:
            # recorded browser stopped answering; reap it before replacing the handle
            self._running = None
            logger.info(f"{stale.exe.kind} pid {stale.pid} unreachable, stopping before relaunch")
            try:
                await self._stopper(stale)
            except Exception as e:
                logger.warning(f"Stopping unreachable browser pid {stale.pid} failed: {e}")

        launched = await self._launcher(self.config, self.endpoint)
        self._running = launched
        watcher = asyncio.ensure_future(self._watch_exit(launched))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    async def _watch_exit(self, launched: RunningChrome) -> None:
        code = await launched.proc.wait()
        logger.info(f"{launched.exe.kind} pid {launched.pid} exited (code {code})")
        # a late exit of a replaced process must not clear the current handle
        if self._running is launched:
            self._running = None

    async def stop(self) -> bool:
        """Stop the browser this supervisor launched. False when there was none."""
        running = self._running
        if running is None:
            return False
        await self._stopper(running)
        if self._running is running:
            self._running = None
        return True

    async def shutdown(self) -> None:
        try:
            await self.stop()
        except Exception as e:
            logger.warning(f"Browser stop failed: {e}")
        for watcher in list(self._watchers):
            watcher.cancel()
