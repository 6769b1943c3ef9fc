"""Browser session backed by Playwright, plus the browser tools built on it."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from testsmith.core.config import PlaywrightConfig, ValidationConfig
from testsmith.core.exceptions import (
    ElementNotFoundError,
    NetworkError,
    SessionStartError,
    StepError,
    StepTimeoutError,
)
from testsmith.core.logging import get_logger
from testsmith.core.schemas import PageObservation
from testsmith.observer.page import observe_page
from testsmith.tools.base import Tool

log = get_logger("browser")


class BrowserSession(Protocol):
    """Live browser capability used by the validation controller."""

    async def navigate(self, url: str) -> None: ...

    async def click(self, locator: str) -> None: ...

    async def type(self, locator: str, text: str) -> None: ...

    async def wait_for(self, target: Union[str, int]) -> None: ...

    async def extract_interactive_elements(self) -> PageObservation: ...

    async def screenshot(self, name: str) -> Optional[str]: ...

    async def current_url(self) -> str: ...

    async def title(self) -> str: ...

    async def is_present(self, locator: str) -> bool: ...

    async def text_of(self, locator: str) -> str: ...


class PlaywrightSession:
    """
    One browser, one context, one page.

    Every action carries an explicit timeout and Playwright failures are
    re-raised as StepError subclasses so the executor can classify them.

    Example:
        >>> async with PlaywrightSession("http://localhost:3000") as session:
        ...     await session.navigate("/login")
        ...     await session.type("#username", "demo")
    """

    def __init__(
        self,
        base_url: str,
        browser_config: Optional[PlaywrightConfig] = None,
        validation_config: Optional[ValidationConfig] = None,
        screenshot_dir: Optional[Path] = None,
    ) -> None:
        self.base_url = base_url
        self.browser_config = browser_config or PlaywrightConfig()
        self.validation_config = validation_config or ValidationConfig()
        self.screenshot_dir = screenshot_dir
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def __aenter__(self) -> PlaywrightSession:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        cfg = self.browser_config
        try:
            self._playwright = await async_playwright().start()
            launcher = getattr(self._playwright, cfg.project)
            launch_kwargs: Dict[str, Any] = {"headless": cfg.headless}
            if cfg.channel and cfg.project == "chromium":
                launch_kwargs["channel"] = cfg.channel
            self._browser = await launcher.launch(**launch_kwargs)
            self._context = await self._browser.new_context(
                viewport={"width": cfg.viewport_width, "height": cfg.viewport_height},
            )
            self._page = await self._context.new_page()
        except PlaywrightError as e:
            await self.close()
            raise SessionStartError(
                f"Could not start {cfg.project} browser: {e}",
                {"project": cfg.project, "headless": cfg.headless},
            ) from e
        log.info("browser_started", project=cfg.project, headless=cfg.headless)

    async def close(self) -> None:
        for resource in (self._context, self._browser):
            if resource is not None:
                try:
                    await resource.close()
                except PlaywrightError as e:
                    log.debug("browser_close_failed", error=str(e))
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright = self._browser = self._context = self._page = None

    @property
    def page(self):
        if self._page is None:
            raise SessionStartError("Browser session not started")
        return self._page

    @property
    def step_timeout(self) -> int:
        return self.validation_config.step_timeout_ms

    def resolve_url(self, url: str) -> str:
        if url.startswith(("http://", "https://", "file://", "about:")):
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))

    async def navigate(self, url: str) -> None:
        target = self.resolve_url(url)
        timeout = self.validation_config.navigation_timeout_ms
        try:
            response = await self.page.goto(target, wait_until="domcontentloaded", timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Navigation timed out after {timeout}ms", "navigate", target) from e
        except PlaywrightError as e:
            raise NetworkError(f"Navigation failed: {e.message}", "navigate", target) from e
        if response is not None and response.status >= 400:
            log.warning("navigation_http_error", url=target, status=response.status)

    async def _visible(self, locator: str, action: str):
        handle = self.page.locator(locator).first
        try:
            await handle.wait_for(state="visible", timeout=self.step_timeout)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(locator, action) from e
        except PlaywrightError as e:
            raise ElementNotFoundError(locator, action, {"error": e.message}) from e
        return handle

    async def click(self, locator: str) -> None:
        handle = await self._visible(locator, "click")
        try:
            await handle.click(timeout=self.step_timeout)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Click timed out after {self.step_timeout}ms", "click", locator) from e
        except PlaywrightError as e:
            raise StepError(f"Click failed: {e.message}", "click", locator) from e

    async def type(self, locator: str, text: str) -> None:
        handle = await self._visible(locator, "type")
        try:
            await handle.fill(text, timeout=self.step_timeout)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Typing timed out after {self.step_timeout}ms", "type", locator) from e
        except PlaywrightError as e:
            raise StepError(f"Typing failed: {e.message}", "type", locator) from e

    async def wait_for(self, target: Union[str, int, None]) -> None:
        if isinstance(target, int):
            if target > self.step_timeout:
                log.warning("wait_clamped", requested_ms=target, step_timeout_ms=self.step_timeout)
            await asyncio.sleep(min(target, self.step_timeout) / 1000)
            return
        if not target:
            try:
                await self.page.wait_for_load_state("load", timeout=self.step_timeout)
            except PlaywrightTimeoutError as e:
                raise StepTimeoutError("Page did not finish loading", "wait") from e
            return
        try:
            await self.page.locator(target).first.wait_for(state="visible", timeout=self.step_timeout)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Timed out waiting for {target}", "wait", target) from e
        except PlaywrightError as e:
            raise ElementNotFoundError(target, "wait", {"error": e.message}) from e

    async def extract_interactive_elements(self) -> PageObservation:
        return await observe_page(self.page)

    async def screenshot(self, name: str) -> Optional[str]:
        if self.screenshot_dir is None:
            return None
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        out = self.screenshot_dir / f"{name}.png"
        await self.page.screenshot(path=str(out), full_page=True, timeout=self.step_timeout)
        return str(out)

    async def current_url(self) -> str:
        return self.page.url

    async def title(self) -> str:
        return await self.page.title()

    async def is_present(self, locator: str) -> bool:
        try:
            return await self.page.locator(locator).count() > 0
        except PlaywrightError:
            return False

    async def text_of(self, locator: str) -> str:
        handle = await self._visible(locator, "assert")
        return await handle.inner_text(timeout=self.step_timeout)


def browser_tools(session: BrowserSession, timeout_s: Optional[float] = None) -> List[Tool]:
    """Expose a live session to the oracle during project analysis."""

    async def browser_navigate(url: str) -> Dict[str, Any]:
        await session.navigate(url)
        return {"url": await session.current_url(), "title": await session.title()}

    async def browser_click(selector: str) -> Dict[str, Any]:
        await session.click(selector)
        return {"clicked": selector, "url": await session.current_url()}

    async def browser_type(selector: str, text: str) -> Dict[str, Any]:
        await session.type(selector, text)
        return {"typed": selector}

    async def browser_extract_elements() -> Dict[str, Any]:
        observation = await session.extract_interactive_elements()
        return {
            "title": observation.title,
            "url": observation.url,
            "elements": [
                {"tag": e.tag, "attributes": e.attributes, "text": e.text}
                for e in observation.elements[:50]
            ],
            "forms": observation.forms,
        }

    async def browser_screenshot(name: str = "analysis") -> Dict[str, Any]:
        return {"path": await session.screenshot(name)}

    def _tool(name, description, properties, required, handler) -> Tool:
        return Tool(
            name=name,
            description=description,
            parameters={"type": "object", "properties": properties, "required": required},
            handler=handler,
            timeout_s=timeout_s,
        )

    return [
        _tool(
            "browser_navigate",
            "Open a URL or a path relative to the application's base URL.",
            {"url": {"type": "string"}},
            ["url"],
            browser_navigate,
        ),
        _tool(
            "browser_click",
            "Click the first element matching a CSS or Playwright selector.",
            {"selector": {"type": "string"}},
            ["selector"],
            browser_click,
        ),
        _tool(
            "browser_type",
            "Fill text into the first element matching a selector.",
            {"selector": {"type": "string"}, "text": {"type": "string"}},
            ["selector", "text"],
            browser_type,
        ),
        _tool(
            "browser_extract_elements",
            "List the interactive elements and forms of the current page.",
            {},
            [],
            browser_extract_elements,
        ),
        _tool(
            "browser_screenshot",
            "Save a full-page screenshot of the current page.",
            {"name": {"type": "string"}},
            [],
            browser_screenshot,
        ),
    ]
