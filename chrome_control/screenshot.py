"""
Screenshot capture over a target's CDP socket.

Full-page captures read the content size from Page.getLayoutMetrics and pass
it as a clip at scale 1, together with captureBeyondViewport, instead of
overriding the device metrics.
"""

import base64
import io
import logging
from typing import Any, Dict, Optional

from PIL import Image

from .cdp import CdpClient
from .errors import CaptureFailed

logger = logging.getLogger(__name__)


def full_page_clip(metrics: Any) -> Optional[Dict[str, float]]:
    """Clip covering the whole content, or None when the size is unusable."""
    if not isinstance(metrics, dict):
        return None
    size = metrics.get("cssContentSize") or metrics.get("contentSize") or {}
    try:
        width = float(size.get("width") or 0)
        height = float(size.get("height") or 0)
    except (TypeError, ValueError, AttributeError):
        return None
    if width > 0 and height > 0:
        return {"x": 0, "y": 0, "width": width, "height": height, "scale": 1}
    return None


async def capture_screenshot(ws_url: str, full_page: bool = False) -> bytes:
    """Capture the target behind `ws_url` as PNG bytes."""
    cdp = await CdpClient.connect(ws_url)
    try:
        await cdp.send("Page.enable")

        clip = None
        if full_page:
            clip = full_page_clip(await cdp.send("Page.getLayoutMetrics"))

        params: Dict[str, Any] = {
            "format": "png",
            "fromSurface": True,
            "captureBeyondViewport": True,
        }
        if clip:
            params["clip"] = clip
        result = await cdp.send("Page.captureScreenshot", params)

        data = result.get("data") if isinstance(result, dict) else None
        if not data:
            raise CaptureFailed("Screenshot failed: missing data")
        return base64.b64decode(data)
    except Exception as e:
        await cdp.close_with_error(e)
        raise
    finally:
        await cdp.close()


def downscale_png(png_data: bytes, max_dim: int) -> bytes:
    """
    Shrink a PNG so its longest side is at most `max_dim` pixels.

    Aspect ratio is preserved and LANCZOS resampling is used. Images already
    within bounds, and max_dim <= 0, return the input unchanged.
    """
    if max_dim <= 0:
        return png_data
    img = Image.open(io.BytesIO(png_data))
    w, h = img.size
    if w <= max_dim and h <= max_dim:
        return png_data
    if w > h:
        new_w, new_h = max_dim, max(1, int(h * max_dim / w))
    else:
        new_w, new_h = max(1, int(w * max_dim / h)), max_dim
    logger.debug(f"Downscaling screenshot {w}x{h} -> {new_w}x{new_h}")
    img = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
