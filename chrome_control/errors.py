"""
Error taxonomy for the browser control subsystem.

Every failure raised by the CDP client, target discovery, screenshot capture
and the lifecycle supervisor derives from BrowserControlError so the control
API can map it to a JSON error body in one place.
"""

from typing import Optional


class BrowserControlError(Exception):
    """Base class for browser control failures."""
    pass


class EndpointUnreachable(BrowserControlError):
    """The introspection endpoint did not answer in time or answered non-2xx."""
    pass


class MalformedEndpointDescriptor(BrowserControlError):
    """The introspection document lacks a usable control socket URL."""
    pass


class TargetCreationFailed(BrowserControlError):
    pass


class CaptureFailed(BrowserControlError):
    pass


class AttachOnlyNoBrowser(BrowserControlError):
    """attach_only is set and no browser is listening on the CDP port."""

    def __init__(self, message: str = "Browser attachOnly is enabled and no browser is running."):
        super().__init__(message)


class BrowserLaunchFailed(BrowserControlError):
    pass


class SocketClosed(BrowserControlError):
    """The CDP socket went away while requests were still pending."""

    def __init__(self, message: str = "CDP socket closed"):
        super().__init__(message)


class CdpConnectionError(BrowserControlError):
    """The WebSocket handshake with the control socket failed."""
    pass


class CommandFailed(BrowserControlError):
    """The browser answered a CDP command with an error object."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class CommandTimeout(BrowserControlError):
    def __init__(self, method: str, timeout: float):
        super().__init__(f"CDP {method} timed out after {timeout}s")
        self.method = method
        self.timeout = timeout


class GenericUpstreamError(BrowserControlError):
    """A DevTools HTTP endpoint answered with a non-success status."""

    def __init__(self, status: int, url: str = ""):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.url = url
