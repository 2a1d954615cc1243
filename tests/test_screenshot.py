"""
Tests for screenshot capture (chrome_control/screenshot.py)
"""
import base64
import io

import pytest
from PIL import Image

from chrome_control.errors import CaptureFailed, CommandFailed
from chrome_control.screenshot import capture_screenshot, downscale_png, full_page_clip
from conftest import FakeBrowser, run


def make_png(width, height, color=(255, 69, 0)):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def page_responder(png, metrics=None):
    encoded = base64.b64encode(png).decode()

    def responder(msg):
        if msg["method"] == "Page.getLayoutMetrics":
            return {"id": msg["id"], "result": metrics or {}}
        if msg["method"] == "Page.captureScreenshot":
            return {"id": msg["id"], "result": {"data": encoded}}
        return {"id": msg["id"], "result": {}}
    return responder


class TestFullPageClip:
    def test_css_content_size_preferred(self):
        clip = full_page_clip({
            "cssContentSize": {"x": 0, "y": 0, "width": 800, "height": 3000},
            "contentSize": {"x": 0, "y": 0, "width": 1600, "height": 6000},
        })
        assert clip == {"x": 0, "y": 0, "width": 800, "height": 3000, "scale": 1}

    def test_falls_back_to_content_size(self):
        clip = full_page_clip({"contentSize": {"width": 1024.5, "height": 2048}})
        assert clip == {"x": 0, "y": 0, "width": 1024.5, "height": 2048, "scale": 1}

    @pytest.mark.parametrize("metrics", [
        {},
        None,
        {"cssContentSize": {"width": 0, "height": 100}},
        {"contentSize": {"width": 100, "height": -1}},
        {"cssContentSize": {"width": "wide", "height": 10}},
    ])
    def test_unusable_size_means_no_clip(self, metrics):
        assert full_page_clip(metrics) is None


class TestCaptureScreenshot:
    def test_full_page_passes_clip(self):
        png = make_png(4, 4)
        metrics = {"cssContentSize": {"width": 800, "height": 3000}}

        async def scenario():
            async with FakeBrowser(page_responder(png, metrics)) as browser:
                data = await capture_screenshot(browser.ws_url, full_page=True)
            return data, browser

        data, browser = run(scenario())
        assert data == png
        assert browser.methods() == ["Page.enable", "Page.getLayoutMetrics", "Page.captureScreenshot"]
        assert browser.params_for("Page.captureScreenshot") == {
            "format": "png",
            "fromSurface": True,
            "captureBeyondViewport": True,
            "clip": {"x": 0, "y": 0, "width": 800.0, "height": 3000.0, "scale": 1},
        }
        assert browser.disconnects == 1

    def test_viewport_capture_skips_layout_metrics(self):
        png = make_png(2, 2)

        async def scenario():
            async with FakeBrowser(page_responder(png)) as browser:
                await capture_screenshot(browser.ws_url)
            return browser

        browser = run(scenario())
        assert browser.methods() == ["Page.enable", "Page.captureScreenshot"]
        assert "clip" not in browser.params_for("Page.captureScreenshot")

    def test_zero_content_size_captures_without_clip(self):
        png = make_png(2, 2)
        metrics = {"cssContentSize": {"width": 0, "height": 0}}

        async def scenario():
            async with FakeBrowser(page_responder(png, metrics)) as browser:
                await capture_screenshot(browser.ws_url, full_page=True)
            return browser

        browser = run(scenario())
        assert "clip" not in browser.params_for("Page.captureScreenshot")

    def test_missing_data_fails(self):
        async def scenario():
            async with FakeBrowser() as browser:
                with pytest.raises(CaptureFailed, match="missing data"):
                    await capture_screenshot(browser.ws_url)
            return browser

        browser = run(scenario())
        assert browser.disconnects == 1

    def test_command_error_propagates_and_closes(self):
        def responder(msg):
            if msg["method"] == "Page.captureScreenshot":
                return {"id": msg["id"], "error": {"message": "Target crashed"}}
            return {"id": msg["id"], "result": {}}

        async def scenario():
            async with FakeBrowser(responder) as browser:
                with pytest.raises(CommandFailed, match="Target crashed"):
                    await capture_screenshot(browser.ws_url)
            return browser

        browser = run(scenario())
        assert browser.disconnects == 1


class TestDownscale:
    def test_landscape_longest_side_bounded(self):
        out = downscale_png(make_png(400, 200), 100)
        assert Image.open(io.BytesIO(out)).size == (100, 50)

    def test_portrait_longest_side_bounded(self):
        out = downscale_png(make_png(300, 1200), 200)
        assert Image.open(io.BytesIO(out)).size == (50, 200)

    def test_small_image_unchanged(self):
        png = make_png(40, 30)
        assert downscale_png(png, 100) is png

    def test_disabled(self):
        png = make_png(400, 300)
        assert downscale_png(png, 0) is png
