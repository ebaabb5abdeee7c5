"""
Redirect-chain navigation over a running AdsPower browser.

Attaches to the browser's DevTools endpoint with Playwright, opens the
original URL in the profile's own context and records every main-frame
URL it passes through until the page settles.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .browser_client import BrowserSession
from .errors import ChangeLinkError, ErrorType

logger = logging.getLogger(__name__)


@dataclass
class NavigationResult:
    final_url: str
    redirect_chain: List[str] = field(default_factory=list)


class Navigator:
    """Follows a URL through its redirects inside a browser session."""

    async def navigate(self, session: BrowserSession, url: str, timeout: float) -> NavigationResult:
        raise NotImplementedError


class PlaywrightNavigator(Navigator):
    """
    Usage:
        navigator = PlaywrightNavigator()
        await navigator.start()
        result = await navigator.navigate(session, "https://aff.example/x", timeout=60)
        await navigator.stop()
    """

    def __init__(self, settle_timeout: float = 10.0, max_redirects: int = 20):
        self.settle_timeout = settle_timeout
        self.max_redirects = max_redirects
        self._playwright = None

    async def start(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def navigate(self, session: BrowserSession, url: str, timeout: float) -> NavigationResult:
        if not session.ws_endpoint:
            raise ChangeLinkError(
                f"Browser session for {session.user_id} has no DevTools endpoint",
                ErrorType.BROWSER_ERROR
            )
        await self.start()

        chain: List[str] = [url]
        try:
            browser = await self._playwright.chromium.connect_over_cdp(
                session.ws_endpoint, timeout=timeout * 1000
            )
        except PlaywrightError as e:
            raise ChangeLinkError(f"Could not attach to browser {session.user_id}: {e}", ErrorType.BROWSER_ERROR)

        try:
            context = browser.contexts[0] if browser.contexts else await browser.new_context()
            page = await context.new_page()

            def _on_navigated(frame):
                if frame == page.main_frame and frame.url and frame.url != chain[-1]:
                    chain.append(frame.url)

            page.on("framenavigated", _on_navigated)

            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
                # JS and meta-refresh redirects fire after DOMContentLoaded
                await page.wait_for_load_state("networkidle", timeout=self.settle_timeout * 1000)
            except PlaywrightTimeoutError:
                if len(chain) <= 1:
                    raise ChangeLinkError(f"Navigation timed out for {url}", ErrorType.TIMEOUT_ERROR)
                logger.debug(f"[Navigator] Page did not settle, using last URL after {len(chain)} hops")

            final_url = page.url or chain[-1]
            if final_url != chain[-1]:
                chain.append(final_url)
            await page.close()

        except PlaywrightError as e:
            raise ChangeLinkError(f"Browser navigation failed for {url}: {e}", ErrorType.BROWSER_ERROR)
        finally:
            # Disconnects only; the AdsPower browser keeps running until stopped
            await browser.close()

        if len(chain) - 1 > self.max_redirects:
            logger.warning(f"[Navigator] {url} took {len(chain) - 1} redirects")
        return NavigationResult(final_url=final_url, redirect_chain=chain)
