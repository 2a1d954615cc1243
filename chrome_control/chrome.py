"""
chrome.py -- locating, launching and stopping a Chrome-family browser
======================================================================

The launched browser gets its own profile directory (BrowserConfig.user_data_dir)
so it never touches the user's everyday profile, and listens for CDP on
BrowserConfig.cdp_port. launch_chrome() only returns once /json/version
answers on that port.
"""

import asyncio
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .config import BrowserConfig
from .devtools import DevToolsEndpoint
from .errors import BrowserLaunchFailed

logger = logging.getLogger(__name__)

LAUNCH_POLL_INTERVAL = 0.2
STOP_TIMEOUT = 5.0

# (kind, candidate) in preference order; candidates are absolute paths or PATH names
_MAC_CANDIDATES = [
    ("chrome", "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"),
    ("brave", "/Applications/Brave Browser.app/Contents/MacOS/Brave Browser"),
    ("edge", "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge"),
    ("chromium", "/Applications/Chromium.app/Contents/MacOS/Chromium"),
]
_LINUX_CANDIDATES = [
    ("chrome", "google-chrome"),
    ("chrome", "google-chrome-stable"),
    ("brave", "brave-browser"),
    ("edge", "microsoft-edge"),
    ("chromium", "chromium"),
    ("chromium", "chromium-browser"),
]
_WINDOWS_CANDIDATES = [
    ("chrome", r"C:\Program Files\Google\Chrome\Application\chrome.exe"),
    ("chrome", r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe"),
    ("brave", r"C:\Program Files\BraveSoftware\Brave-Browser\Application\brave.exe"),
    ("edge", r"C:\Program Files (x86)\Microsoft\Edge\Application\msedge.exe"),
]


@dataclass
class BrowserExecutable:
    kind: str
    path: str


@dataclass
class RunningChrome:
    proc: "asyncio.subprocess.Process"
    pid: int
    cdp_port: int
    exe: BrowserExecutable
    user_data_dir: str
    started_at: float = field(default_factory=time.time)


def _platform_candidates() -> List[Tuple[str, str]]:
    if sys.platform == "darwin":
        return _MAC_CANDIDATES
    if sys.platform.startswith("win"):
        return _WINDOWS_CANDIDATES
    return _LINUX_CANDIDATES


def find_browser_executable(config: BrowserConfig) -> BrowserExecutable:
    """Explicit BROWSER_EXECUTABLE wins, otherwise the first installed Chrome-family browser."""
    if config.executable_path:
        path = os.path.expanduser(config.executable_path)
        if not os.path.exists(path) and not shutil.which(path):
            raise BrowserLaunchFailed(f"Browser executable not found: {path}")
        return BrowserExecutable(kind="custom", path=path)

    for kind, candidate in _platform_candidates():
        if os.path.isabs(candidate):
            if os.path.exists(candidate):
                return BrowserExecutable(kind=kind, path=candidate)
        else:
            found = shutil.which(candidate)
            if found:
                return BrowserExecutable(kind=kind, path=found)
    raise BrowserLaunchFailed("No Chrome/Brave/Edge/Chromium executable found; set BROWSER_EXECUTABLE")


def build_launch_args(config: BrowserConfig, exe: BrowserExecutable) -> List[str]:
    args = [
        exe.path,
        f"--remote-debugging-port={config.cdp_port}",
        f"--user-data-dir={config.user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-sync",
        "--disable-background-networking",
    ]
    if config.headless:
        args.append("--headless=new")
    args.append("about:blank")
    return args


async def launch_chrome(config: BrowserConfig, endpoint: DevToolsEndpoint) -> RunningChrome:
    """Spawn the browser and wait until its CDP port answers."""
    exe = find_browser_executable(config)
    os.makedirs(config.user_data_dir, exist_ok=True)
    args = build_launch_args(config, exe)

    logger.info(f"Launching {exe.kind} ({exe.path}) on CDP port {config.cdp_port}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise BrowserLaunchFailed(f"Failed to start {exe.path}: {e}") from e

    running = RunningChrome(
        proc=proc,
        pid=proc.pid,
        cdp_port=config.cdp_port,
        exe=exe,
        user_data_dir=config.user_data_dir,
    )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.launch_timeout
    while loop.time() < deadline:
        if proc.returncode is not None:
            raise BrowserLaunchFailed(f"{exe.kind} exited during startup (code {proc.returncode})")
        if await endpoint.probe(timeout=0.5):
            logger.info(f"{exe.kind} pid {proc.pid} reachable on CDP port {config.cdp_port}")
            return running
        await asyncio.sleep(LAUNCH_POLL_INTERVAL)

    await stop_chrome(running)
    raise BrowserLaunchFailed(
        f"{exe.kind} did not open CDP port {config.cdp_port} within {config.launch_timeout}s"
    )


async def stop_chrome(running: RunningChrome, timeout: float = STOP_TIMEOUT) -> None:
    """SIGTERM, then SIGKILL if the process is still alive after `timeout`."""
    proc = running.proc
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{running.exe.kind} pid {running.pid} ignored SIGTERM, killing")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
    logger.info(f"{running.exe.kind} pid {running.pid} stopped")
