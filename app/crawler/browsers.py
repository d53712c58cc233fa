"""Browser sessions consumed by the execution strategies.

Strategies only talk to the small ``BrowserSession`` / ``PageHandle``
surface below, so Playwright and Selenium are interchangeable and tests can
substitute fakes.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Optional, Protocol

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.remote.webdriver import WebDriver

from . import config
from .utils import log_line

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

_HIDE_WEBDRIVER = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"


class PageHandle(Protocol):
    def set_timeouts(self, nav_timeout_s: float, eval_timeout_s: float) -> None: ...

    def goto(self, url: str) -> None: ...

    def evaluate(self, script: str) -> Any: ...

    def content(self) -> str: ...

    def settle(self, seconds: float) -> None: ...

    def close(self) -> None: ...


class BrowserSession(Protocol):
    def new_page(self) -> PageHandle: ...

    def is_connected(self) -> bool: ...

    def close(self) -> None: ...


SessionFactory = Callable[[], BrowserSession]


# ---------------------------------------------------------------------------
# Playwright
# ---------------------------------------------------------------------------


class PlaywrightPage:
    def __init__(self, page: Page, owned_context: Optional[BrowserContext] = None) -> None:
        self._page = page
        self._owned_context = owned_context

    def set_timeouts(self, nav_timeout_s: float, eval_timeout_s: float) -> None:
        self._page.set_default_navigation_timeout(nav_timeout_s * 1000)
        self._page.set_default_timeout(eval_timeout_s * 1000)

    def goto(self, url: str) -> None:
        self._page.goto(url, wait_until="domcontentloaded")

    def evaluate(self, script: str) -> Any:
        return self._page.evaluate(script)

    def content(self) -> str:
        return self._page.content()

    def settle(self, seconds: float) -> None:
        if seconds > 0:
            self._page.wait_for_timeout(seconds * 1000)

    def close(self) -> None:
        try:
            if not self._page.is_closed():
                self._page.close()
        finally:
            if self._owned_context is not None:
                self._owned_context.close()


class PlaywrightSession:
    """One Chromium process driven from the thread that created it.

    With ``isolate_contexts`` every page gets its own browser context, so
    cookies and storage never leak between URLs.
    """

    def __init__(self, *, headless: bool | None = None, isolate_contexts: bool = True) -> None:
        self._pw: Playwright = sync_playwright().start()
        try:
            self._browser: Browser = self._pw.chromium.launch(
                headless=config.HEADLESS if headless is None else headless,
                args=[
                    "--disable-blink-features=AutomationControlled",
                    "--no-sandbox",
                    "--disable-dev-shm-usage",
                ],
            )
        except Exception:
            self._pw.stop()
            raise
        self._isolate = isolate_contexts
        self._shared: Optional[BrowserContext] = None if isolate_contexts else self._new_context()

    def _new_context(self) -> BrowserContext:
        context = self._browser.new_context(
            user_agent=UA,
            locale="en-US",
            viewport={"width": 1368, "height": 900},
        )
        context.add_init_script(_HIDE_WEBDRIVER)
        return context

    def new_page(self) -> PlaywrightPage:
        if self._shared is not None:
            return PlaywrightPage(self._shared.new_page())
        context = self._new_context()
        try:
            return PlaywrightPage(context.new_page(), owned_context=context)
        except Exception:
            context.close()
            raise

    def is_connected(self) -> bool:
        return self._browser.is_connected()

    def close(self) -> None:
        try:
            self._browser.close()
        except Exception as exc:  # noqa: BLE001
            log_line(f"[BROWSER] Error closing Playwright browser: {exc}")
        finally:
            self._pw.stop()


# ---------------------------------------------------------------------------
# Selenium
# ---------------------------------------------------------------------------


CHROME_ARGS = (
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--window-size=1920,1080",
    f"--user-agent={UA}",
)


def make_driver() -> WebDriver:
    """Start the fallback headless Chrome used by the single-browser strategy."""

    options = Options()
    options.binary_location = config.CHROME_BINARY
    for arg in (("--headless=new",) if config.HEADLESS else ()) + CHROME_ARGS:
        options.add_argument(arg)
    return webdriver.Chrome(options=options)


_ASYNC_WRAPPER = """
const done = arguments[arguments.length - 1];
Promise.resolve((%s)())
    .then(done)
    .catch(err => done({__error: String(err && err.message || err)}));
"""


class SeleniumPage:
    def __init__(self, driver: WebDriver) -> None:
        self._driver = driver

    def set_timeouts(self, nav_timeout_s: float, eval_timeout_s: float) -> None:
        self._driver.set_page_load_timeout(nav_timeout_s)
        self._driver.set_script_timeout(eval_timeout_s)

    def goto(self, url: str) -> None:
        self._driver.get(url)

    def evaluate(self, script: str) -> Any:
        result = self._driver.execute_async_script(_ASYNC_WRAPPER % script)
        if isinstance(result, dict) and "__error" in result:
            raise RuntimeError(f"Evaluation failed: {result['__error']}")
        return result

    def content(self) -> str:
        return self._driver.page_source

    def settle(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def close(self) -> None:
        # The driver outlives the page; reset it for the next URL.
        try:
            self._driver.delete_all_cookies()
            self._driver.get("about:blank")
        except WebDriverException as exc:
            log_line(f"[BROWSER] Failed to reset Selenium page: {exc}")


class SeleniumSession:
    """A single Chrome driven through Selenium, one page at a time."""

    def __init__(self, driver_factory: Callable[[], WebDriver] = make_driver) -> None:
        self._driver = driver_factory()

    def new_page(self) -> SeleniumPage:
        return SeleniumPage(self._driver)

    def is_connected(self) -> bool:
        try:
            self._driver.current_url  # noqa: B018
        except WebDriverException:
            return False
        return True

    def close(self) -> None:
        try:
            self._driver.quit()
        except WebDriverException as exc:
            log_line(f"[BROWSER] Error quitting Selenium driver: {exc}")


__all__ = [
    "PageHandle",
    "BrowserSession",
    "SessionFactory",
    "PlaywrightPage",
    "PlaywrightSession",
    "SeleniumPage",
    "SeleniumSession",
    "make_driver",
]
