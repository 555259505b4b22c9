"""
Tests for DashboardBrowserClient helpers that do not need a real browser:
cookie jar loading, login recovery and screencast frame handling.
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config_loader import BrowserConfig
from services.browser.browser_client import DashboardBrowserClient


def _client(tmp_path, **overrides):
    config = BrowserConfig(
        dashboard_url="http://grafana.local/d/ops",
        cookies_path=str(tmp_path / "cookies.json"),
        **overrides,
    )
    return DashboardBrowserClient(config)


class TestCookies:
    def test_missing_jar_yields_no_cookies(self, tmp_path):
        assert _client(tmp_path)._load_cookies() == []

    def test_jar_is_filtered_to_accepted_keys(self, tmp_path):
        (tmp_path / "cookies.json").write_text(
            json.dumps(
                [
                    {"name": "grafana_session", "value": "abc", "domain": "grafana.local",
                     "path": "/", "hostOnly": True, "storeId": "0"},
                    {"value": "no-name"},
                    "garbage",
                ]
            ),
            encoding="utf-8",
        )

        cookies = _client(tmp_path)._load_cookies()

        assert cookies == [
            {"name": "grafana_session", "value": "abc", "domain": "grafana.local", "path": "/"}
        ]

    def test_malformed_jar_is_ignored(self, tmp_path):
        (tmp_path / "cookies.json").write_text("{", encoding="utf-8")
        assert _client(tmp_path)._load_cookies() == []


class TestLogin:
    def test_logged_in_page_is_left_alone(self, tmp_path):
        page = MagicMock()
        page.url = "http://grafana.local/d/ops"
        page.fill = AsyncMock()

        asyncio.run(_client(tmp_path, username="u", password="p").ensure_logged_in(page))

        page.fill.assert_not_called()

    def test_login_form_is_submitted(self, tmp_path):
        page = MagicMock()
        page.url = "http://grafana.local/login"
        page.fill = AsyncMock()
        page.click = AsyncMock()
        page.goto = AsyncMock()

        async def _land(*_):
            page.url = "http://grafana.local/d/ops"

        page.wait_for_load_state = AsyncMock(side_effect=_land)

        asyncio.run(_client(tmp_path, username="u", password="p").ensure_logged_in(page))

        page.fill.assert_any_await('input[name="user"]', "u")
        page.fill.assert_any_await('input[name="password"]', "p")
        page.goto.assert_awaited_once()

    def test_rejected_login_raises(self, tmp_path):
        page = MagicMock()
        page.url = "http://grafana.local/login"
        page.fill = AsyncMock()
        page.click = AsyncMock()
        page.wait_for_load_state = AsyncMock()

        with pytest.raises(RuntimeError):
            asyncio.run(_client(tmp_path, username="u", password="p").ensure_logged_in(page))


class TestScreencast:
    def test_frames_are_decoded_and_acked(self, tmp_path):
        async def scenario():
            frames = []
            handlers = {}

            cdp = MagicMock()
            cdp.send = AsyncMock()
            cdp.detach = AsyncMock()
            cdp.on = lambda event, handler: handlers.__setitem__(event, handler)

            client = _client(tmp_path)
            client._context = MagicMock()
            client._context.new_cdp_session = AsyncMock(return_value=cdp)
            client._page = MagicMock()

            await client.start_screencast(frames.append)
            await handlers["Page.screencastFrame"](
                {"data": base64.b64encode(b"png-bytes").decode(), "sessionId": 7}
            )

            assert frames == [b"png-bytes"]
            cdp.send.assert_any_await("Page.screencastFrameAck", {"sessionId": 7})
            cdp.send.assert_any_await(
                "Page.startScreencast", {"format": "png", "everyNthFrame": 1}
            )

            await client.stop_screencast()
            cdp.send.assert_any_await("Page.stopScreencast")

        asyncio.run(scenario())
