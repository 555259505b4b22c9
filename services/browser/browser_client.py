"""
Dashboard browser client (frame source).

HARD LAWS:
- ONE browser, ONE context, ONE authoritative dashboard page
- Frames come from the CDP screencast, never from screenshots
- Cookies are the only persisted state (cookies.json)

The supervisor owns this client; start() replaces any previous session so a
restart always gets a fresh browser.
"""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    CDPSession,
    Page,
    async_playwright,
)

from core.config_loader import BrowserConfig
from shared.logging.logger import get_logger

log = get_logger("services.browser", runtime="browser")

FrameCallback = Callable[[bytes], None]

# Keys accepted by BrowserContext.add_cookies(); exported jars may carry more
_COOKIE_KEYS = {"name", "value", "url", "domain", "path", "expires", "httpOnly", "secure", "sameSite"}


class DashboardBrowserClient:
    def __init__(self, config: BrowserConfig):
        self._config = config

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None
        self._cookie_task: Optional[asyncio.Task] = None

        self._lock = asyncio.Lock()
        self._started = False

    # ------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    @property
    def page(self) -> Optional[Page]:
        return self._page

    # ------------------------------------------------------------

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                log.info("Replacing existing browser session")
                await self._close_locked()

            log.info("Starting headless Chromium")

            self._playwright = await async_playwright().start()

            launch_args: Dict[str, Any] = {
                "headless": True,
                "args": [
                    f"--window-size={self._config.viewport_width},{self._config.viewport_height}",
                    "--no-sandbox",
                ],
            }
            if self._config.executable_path:
                launch_args["executable_path"] = self._config.executable_path

            self._browser = await self._playwright.chromium.launch(**launch_args)
            self._context = await self._browser.new_context(
                viewport={
                    "width": self._config.viewport_width,
                    "height": self._config.viewport_height,
                }
            )

            cookies = self._load_cookies()
            if cookies:
                await self._context.add_cookies(cookies)
                log.info(f"Restored {len(cookies)} cookie(s)")

            self._cookie_task = asyncio.create_task(
                self._refresh_cookies(await self._context.cookies())
            )
            self._started = True

    # ------------------------------------------------------------
    # Navigation / auth
    # ------------------------------------------------------------

    async def open_dashboard(self) -> Page:
        if not self._context:
            raise RuntimeError("Browser not started")

        page = await self._context.new_page()
        log.info(f"Navigating to dashboard → {self._config.dashboard_url}")
        await page.goto(self._config.dashboard_url, wait_until="networkidle")

        await self.ensure_logged_in(page)

        if self._config.injected_css:
            await page.click("#dock-menu-button")
            await page.add_style_tag(content=self._config.injected_css)

        self._page = page
        return page

    async def ensure_logged_in(self, page: Page) -> None:
        """
        Re-authenticate when the dashboard bounced us to its login form.
        """
        if "/login" not in page.url:
            return

        if not self._config.username or not self._config.password:
            log.warning("Dashboard requires login but no credentials are configured")
            return

        log.info("🔐 Dashboard session expired — logging in")
        await page.fill('input[name="user"]', self._config.username)
        await page.fill('input[name="password"]', self._config.password)
        await page.click('button[type="submit"]')
        await page.wait_for_load_state("networkidle")

        if "/login" in page.url:
            raise RuntimeError("Dashboard login failed")

        log.info("✅ Login session valid — continuing")
        await page.goto(self._config.dashboard_url, wait_until="networkidle")

    # ------------------------------------------------------------
    # Screencast
    # ------------------------------------------------------------

    async def start_screencast(self, on_frame: FrameCallback) -> None:
        if not self._context or not self._page:
            raise RuntimeError("Dashboard page not open")

        cdp = await self._context.new_cdp_session(self._page)

        async def _on_frame(params: Dict[str, Any]) -> None:
            on_frame(base64.b64decode(params["data"]))
            try:
                await cdp.send("Page.screencastFrameAck", {"sessionId": params["sessionId"]})
            except Exception as e:
                log.debug(f"Screencast ack ignored: {e}")

        cdp.on("Page.screencastFrame", _on_frame)
        await cdp.send("Page.enable")
        await cdp.send("Page.startScreencast", {"format": "png", "everyNthFrame": 1})

        self._cdp = cdp
        log.info("Started screencast")

    async def stop_screencast(self) -> None:
        cdp, self._cdp = self._cdp, None
        if not cdp:
            return

        try:
            await cdp.send("Page.stopScreencast")
            await cdp.detach()
        except Exception as e:
            log.warning(f"Screencast stop ignored: {e}")

    # ------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------

    def _load_cookies(self) -> List[Dict[str, Any]]:
        path = Path(self._config.cookies_path)
        if not path.exists():
            log.warning(f"No cookie jar at {path}; starting without cookies")
            return []

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            log.warning(f"Failed to read cookie jar ({e}); starting without cookies")
            return []

        if not isinstance(raw, list):
            log.warning("Cookie jar root is not an array; ignoring")
            return []

        return [
            {k: v for k, v in c.items() if k in _COOKIE_KEYS}
            for c in raw
            if isinstance(c, dict) and c.get("name")
        ]

    async def _refresh_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        path = Path(self._config.cookies_path)

        while True:
            await asyncio.sleep(self._config.cookie_refresh_seconds)

            if not self._context:
                return

            try:
                current = await self._context.cookies()
            except Exception as e:
                log.warning(f"Cookie refresh failed: {e}")
                continue

            if current != cookies:
                path.write_text(json.dumps(current), encoding="utf-8")
                cookies = current
                log.debug(f"Cookie jar updated ({len(current)} cookie(s))")

    # ------------------------------------------------------------

    async def shutdown(self) -> None:
        async with self._lock:
            if not self._started:
                return

            log.info("Shutting down browser")
            await self._close_locked()

    async def _close_locked(self) -> None:
        try:
            if self._cookie_task and not self._cookie_task.done():
                self._cookie_task.cancel()
                await asyncio.gather(self._cookie_task, return_exceptions=True)

            await self.stop_screencast()

            if self._context:
                try:
                    await self._context.close()
                except Exception as e:
                    log.warning(f"Browser context close ignored: {e}")

            if self._browser:
                try:
                    await self._browser.close()
                except Exception as e:
                    log.warning(f"Browser close ignored: {e}")

            if self._playwright:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    log.warning(f"Playwright stop ignored: {e}")
        finally:
            self._cookie_task = None
            self._context = None
            self._browser = None
            self._page = None
            self._playwright = None
            self._started = False
