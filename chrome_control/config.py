"""
Browser control configuration, read from the environment.

    BROWSER_CONTROL_URL=http://127.0.0.1:18791 BROWSER_ATTACH_ONLY=1 \
        python3 -m chrome_control serve
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

DEFAULT_CONTROL_URL = "http://127.0.0.1:18791"
DEFAULT_COLOR = "#FF4500"
DEFAULT_LAUNCH_TIMEOUT = 15.0

# Profile and media live apart from the user's normal Chrome profile
BASE_DIR = Path.home() / ".chrome-control"
DEFAULT_USER_DATA_DIR = str(BASE_DIR / "profile")
DEFAULT_MEDIA_DIR = str(BASE_DIR / "media")

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _parse_port(name: str, value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer port, got {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"{name} out of range: {port}")
    return port


def control_port_from_url(control_url: str) -> int:
    parsed = urlparse(control_url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError(f"BROWSER_CONTROL_URL must be an http(s) URL, got {control_url!r}")
    if parsed.port is not None:
        return parsed.port
    return 443 if parsed.scheme == "https" else 80


@dataclass
class BrowserConfig:
    enabled: bool = True
    control_url: str = DEFAULT_CONTROL_URL
    cdp_port: int = 0  # 0 = control port + 1
    executable_path: Optional[str] = None
    headless: bool = False
    attach_only: bool = False
    color: str = DEFAULT_COLOR
    user_data_dir: str = DEFAULT_USER_DATA_DIR
    launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT
    screenshot_max_dim: int = 0
    media_dir: str = DEFAULT_MEDIA_DIR
    control_port: int = field(init=False)

    def __post_init__(self):
        self.control_url = self.control_url.rstrip("/")
        self.control_port = control_port_from_url(self.control_url)
        if not self.cdp_port:
            self.cdp_port = self.control_port + 1
        self.cdp_port = _parse_port("BROWSER_CDP_PORT", self.cdp_port)
        if self.cdp_port == self.control_port:
            raise ValueError("BROWSER_CDP_PORT must differ from the control port")
        if self.launch_timeout <= 0:
            raise ValueError("BROWSER_LAUNCH_TIMEOUT must be positive")
        if self.screenshot_max_dim < 0:
            raise ValueError("BROWSER_SCREENSHOT_MAX_DIM must be >= 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BrowserConfig":
        env = os.environ if environ is None else environ
        cdp_port = env.get("BROWSER_CDP_PORT")
        try:
            launch_timeout = float(env.get("BROWSER_LAUNCH_TIMEOUT", DEFAULT_LAUNCH_TIMEOUT))
            max_dim = int(env.get("BROWSER_SCREENSHOT_MAX_DIM", "0"))
        except ValueError as e:
            raise ValueError(f"Invalid browser config: {e}") from None
        return cls(
            enabled=_parse_bool("BROWSER_ENABLED", env.get("BROWSER_ENABLED"), True),
            control_url=env.get("BROWSER_CONTROL_URL", DEFAULT_CONTROL_URL),
            cdp_port=_parse_port("BROWSER_CDP_PORT", cdp_port) if cdp_port else 0,
            executable_path=env.get("BROWSER_EXECUTABLE") or None,
            headless=_parse_bool("BROWSER_HEADLESS", env.get("BROWSER_HEADLESS"), False),
            attach_only=_parse_bool("BROWSER_ATTACH_ONLY", env.get("BROWSER_ATTACH_ONLY"), False),
            color=env.get("BROWSER_COLOR", DEFAULT_COLOR),
            user_data_dir=os.path.expanduser(env.get("BROWSER_USER_DATA_DIR", DEFAULT_USER_DATA_DIR)),
            launch_timeout=launch_timeout,
            screenshot_max_dim=max_dim,
            media_dir=os.path.expanduser(env.get("BROWSER_MEDIA_DIR", DEFAULT_MEDIA_DIR)),
        )

    def is_loopback_control_url(self) -> bool:
        """The local server only ever binds loopback; a remote control URL means someone else serves it."""
        return urlparse(self.control_url).hostname in LOOPBACK_HOSTS
