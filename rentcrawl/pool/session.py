"""Pooled worker sessions and the factories that create them."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from ..models import utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
if (!window.chrome) { window.chrome = { runtime: {} }; }
"""


class SessionHandle(Protocol):
    """Backing resource of a worker session (a browser and its context)."""

    async def new_unit(self) -> Any:
        """Open a sub-resource (a page)."""
        ...

    async def close_unit(self, unit: Any) -> None:
        ...

    async def close(self) -> None:
        ...


class SessionFactory(Protocol):
    """Creates session handles for a source."""

    async def create(self, source: str) -> SessionHandle:
        ...

    async def close(self) -> None:
        ...


@dataclass
class WorkerSession:
    """One pooled heavy resource bound to a source."""

    source: str
    handle: SessionHandle
    id: str = ""
    is_authenticated: bool = False
    active_units: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    error_count: int = 0
    authenticated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    closed: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.source}-{uuid.uuid4().hex[:12]}"

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_used_at).total_seconds()

    def auth_age_seconds(self, now: datetime) -> Optional[float]:
        if self.authenticated_at is None:
            return None
        return (now - self.authenticated_at).total_seconds()


@dataclass
class BrowserSettings:
    """Launch and context options for one source's browsers."""

    browser_type: str = "chromium"
    headless: bool = True
    args: List[str] = field(default_factory=lambda: list(DEFAULT_ARGS))
    user_agent: Optional[str] = DEFAULT_USER_AGENT
    viewport: Optional[Dict[str, int]] = field(default_factory=lambda: {"width": 1920, "height": 1080})
    locale: Optional[str] = None
    timezone_id: Optional[str] = None
    proxy: Optional[Dict[str, str]] = None

    def context_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self.viewport:
            options["viewport"] = self.viewport
        if self.user_agent:
            options["user_agent"] = self.user_agent
        if self.locale:
            options["locale"] = self.locale
        if self.timezone_id:
            options["timezone_id"] = self.timezone_id
        if self.proxy:
            options["proxy"] = self.proxy
        return options


class PlaywrightSession:
    """Browser + context pair; units are pages."""

    def __init__(self, browser: Browser, context: BrowserContext, navigation_timeout: float) -> None:
        self.browser = browser
        self.context = context
        self.navigation_timeout_ms = navigation_timeout * 1000

    async def new_unit(self) -> Page:
        page = await self.context.new_page()
        page.set_default_timeout(self.navigation_timeout_ms)
        page.set_default_navigation_timeout(self.navigation_timeout_ms)
        await page.add_init_script(STEALTH_SCRIPT)
        return page

    async def close_unit(self, unit: Page) -> None:
        await unit.close()

    async def close(self) -> None:
        try:
            await self.context.close()
        finally:
            await self.browser.close()


class PlaywrightSessionFactory:
    """Launches one browser per session through a shared Playwright driver."""

    def __init__(
        self,
        settings: Optional[Dict[str, BrowserSettings]] = None,
        *,
        navigation_timeout: float = 30.0,
    ) -> None:
        self.settings = settings or {}
        self.navigation_timeout = navigation_timeout
        self._playwright: Optional[Playwright] = None

    def set_browser_settings(self, source: str, settings: BrowserSettings) -> None:
        self.settings[source] = settings

    async def _driver(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return self._playwright

    async def create(self, source: str) -> PlaywrightSession:
        settings = self.settings.get(source) or BrowserSettings()
        driver = await self._driver()
        browser_type = getattr(driver, settings.browser_type, None)
        if browser_type is None:
            raise ValueError(f"Unknown browser type: {settings.browser_type}")

        LOGGER.info("Launching %s browser for %s", settings.browser_type, source)
        browser = await browser_type.launch(headless=settings.headless, args=settings.args)
        try:
            context = await browser.new_context(**settings.context_options())
        except Exception:
            await browser.close()
            raise
        return PlaywrightSession(browser, context, self.navigation_timeout)

    async def close(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
