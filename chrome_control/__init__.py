# Chrome Control
# CDP client, tab discovery, screenshots and a loopback control API for one Chrome-family browser

from .cdp import CdpClient
from .config import BrowserConfig
from .devtools import BrowserTab, DevToolsEndpoint, open_tab
from .server import ControlServer, ServerContext, create_app
from .supervisor import BrowserSupervisor

__all__ = [
    'BrowserConfig',
    'BrowserSupervisor',
    'BrowserTab',
    'CdpClient',
    'ControlServer',
    'DevToolsEndpoint',
    'ServerContext',
    'create_app',
    'open_tab',
]
__version__ = '1.0.0'
