"""
Pytest fixtures for chrome-control tests
"""
import asyncio
import json
import socket

import httpx
import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from chrome_control.chrome import BrowserExecutable, RunningChrome
from chrome_control.config import BrowserConfig
from chrome_control.devtools import DevToolsEndpoint


def run(coro):
    """Run an async scenario from a sync test."""
    return asyncio.run(coro)


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeBrowser:
    """
    Minimal CDP peer on an ephemeral port.

    `responder(msg)` returns a reply frame (dict or raw str), a list of frames,
    or None to stay silent. `on_connect(ws, browser)` replaces the default
    read loop entirely.
    """

    def __init__(self, responder=None, on_connect=None):
        self.responder = responder or (lambda msg: {"id": msg["id"], "result": {}})
        self.on_connect = on_connect
        self.received = []
        self.disconnects = 0
        self.ws_url = None
        self._server = None

    async def _handler(self, ws):
        try:
            if self.on_connect is not None:
                await self.on_connect(ws, self)
                return
            async for raw in ws:
                msg = json.loads(raw)
                self.received.append(msg)
                reply = self.responder(msg)
                if reply is None:
                    continue
                for frame in reply if isinstance(reply, list) else [reply]:
                    await ws.send(frame if isinstance(frame, str) else json.dumps(frame))
        except ConnectionClosed:
            pass
        finally:
            self.disconnects += 1

    def methods(self):
        return [m["method"] for m in self.received]

    def params_for(self, method):
        return next(m.get("params") for m in self.received if m["method"] == method)

    async def __aenter__(self):
        self._server = await serve(self._handler, "127.0.0.1", 0)
        port = self._server.sockets[0].getsockname()[1]
        self.ws_url = f"ws://127.0.0.1:{port}/devtools/browser/TEST"
        return self

    async def __aexit__(self, *exc):
        self._server.close()
        await self._server.wait_closed()


class FakeDevTools:
    """httpx.MockTransport handler imitating Chrome's /json endpoints."""

    def __init__(self, ws_url="ws://127.0.0.1:9/devtools/browser/TEST", tabs=None):
        self.ws_url = ws_url
        self.tabs = list(tabs or [])
        self.reachable = True
        self.version_status = 200
        self.new_tab_statuses = {}
        self.created = {
            "id": "NEWTAB",
            "title": "",
            "url": "https://example.com/",
            "type": "page",
            "webSocketDebuggerUrl": "ws://127.0.0.1:9/devtools/page/NEWTAB",
        }
        self.requests = []

    def __call__(self, request):
        path = request.url.path
        self.requests.append((request.method, path))
        if not self.reachable:
            raise httpx.ConnectError("Connection refused", request=request)

        if path == "/json/version":
            if self.version_status != 200:
                return httpx.Response(self.version_status, text="nope")
            return httpx.Response(200, json={
                "Browser": "Chrome/124.0.0.0",
                "webSocketDebuggerUrl": self.ws_url,
            })
        if path == "/json/list":
            return httpx.Response(200, json=self.tabs)
        if path == "/json/new":
            status = self.new_tab_statuses.get(request.method, 200)
            if status != 200:
                return httpx.Response(status, text="Method Not Allowed" if status == 405 else "error")
            return httpx.Response(200, json=self.created)
        if path.startswith("/json/activate/"):
            return httpx.Response(200, text="Target activated",
                                  headers={"content-type": "application/json"})
        if path.startswith("/json/close/"):
            return httpx.Response(200, text="Target is closing",
                                  headers={"content-type": "application/json"})
        return httpx.Response(404, text="not found")

    def endpoint(self, port=9222):
        return DevToolsEndpoint(port, transport=httpx.MockTransport(self))

    def calls(self, prefix):
        return [(m, p) for m, p in self.requests if p.startswith(prefix)]


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, pid):
        self.pid = pid
        self.returncode = None
        self._exited = asyncio.Event()
        self.terminated = False

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def exit(self, code=0):
        self.returncode = code
        self._exited.set()

    def terminate(self):
        self.terminated = True
        self.exit(-15)

    def kill(self):
        self.exit(-9)


class FakeLauncher:
    """Launcher double: counts launches and flips the fake DevTools endpoint to reachable."""

    def __init__(self, devtools=None, delay=0.0):
        self.devtools = devtools
        self.delay = delay
        self.calls = 0
        self.processes = []

    async def __call__(self, config, endpoint):
        self.calls += 1
        await asyncio.sleep(self.delay)
        proc = FakeProcess(4000 + self.calls)
        self.processes.append(proc)
        if self.devtools is not None:
            self.devtools.reachable = True
        return RunningChrome(
            proc=proc,
            pid=proc.pid,
            cdp_port=config.cdp_port,
            exe=BrowserExecutable(kind="chrome", path="/usr/bin/google-chrome"),
            user_data_dir=config.user_data_dir,
        )


class RecordingStopper:
    """Stopper double: remembers pids and ends the fake process."""

    def __init__(self):
        self.stopped = []

    async def __call__(self, running):
        self.stopped.append(running.pid)
        running.proc.terminate()


@pytest.fixture
def config(tmp_path):
    return BrowserConfig(
        control_url="http://127.0.0.1:18791",
        user_data_dir=str(tmp_path / "profile"),
        media_dir=str(tmp_path / "media"),
    )


@pytest.fixture
def devtools():
    return FakeDevTools()


@pytest.fixture
def sample_tabs():
    return [
        {
            "id": "TAB1",
            "title": "Example",
            "url": "https://example.com/",
            "type": "page",
            "webSocketDebuggerUrl": "ws://127.0.0.1:9/devtools/page/TAB1",
        },
        {
            "id": "TAB2",
            "title": "Docs",
            "url": "https://docs.example.com/",
            "type": "page",
        },
        {"title": "no id, dropped"},
    ]
