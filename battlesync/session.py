# battlesync/session.py
"""
Browser session capture for the Buckler portal.

Opens a Playwright browser on the portal, lets the user sign in by hand and
stores the resulting cookies as a storage-state file. The sync engine reads
that file through StorageStateCredentials; it never drives the login itself.
"""

import os
import time
from typing import Tuple

from playwright.sync_api import Browser, BrowserContext, Page, sync_playwright

from battlesync.config import BUCKLER_BASE
from battlesync.fetcher import RateLimitedFetcher
from battlesync.identity import token_from_landing


def create_browser_context(
    playwright,
    headed: bool = True,
    storage_state_path: str = None,
) -> Tuple[Browser, BrowserContext]:
    """
    Launch Chromium and create a context, loading cookies when a state file exists.

    Raises:
        RuntimeError: If browser launch fails
    """
    try:
        browser = playwright.chromium.launch(headless=not headed)
        context_kwargs = {"user_agent": RateLimitedFetcher.HEADERS["User-Agent"]}
        if storage_state_path and os.path.exists(storage_state_path):
            context_kwargs["storage_state"] = storage_state_path
        context = browser.new_context(**context_kwargs)
        return browser, context
    except Exception as e:
        raise RuntimeError(f"Failed to create browser context: {e}")


def save_storage_state(context: BrowserContext, path: str) -> None:
    """
    Save browser storage state (cookies, localStorage, etc.) to JSON file.

    Raises:
        RuntimeError: If save fails
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    try:
        context.storage_state(path=path)
    except Exception as e:
        raise RuntimeError(f"Failed to save storage state to {path}: {e}")


def is_logged_in(page: Page, login_marker: str = "auth/login") -> bool:
    if login_marker in page.url:
        return False
    return token_from_landing(page.content()) is not None


def capture_storage_state(
    path: str,
    base_url: str = BUCKLER_BASE,
    login_marker: str = "auth/login",
    headed: bool = True,
    timeout_seconds: int = 300,
) -> str:
    """
    Wait for a manual login in a real browser window, then save its cookies.

    Returns the path written. Raises RuntimeError if the login is not finished
    before ``timeout_seconds``.
    """
    with sync_playwright() as playwright:
        browser, context = create_browser_context(playwright, headed=headed, storage_state_path=path)
        try:
            page = context.new_page()
            page.goto(f"{base_url}/top", wait_until="domcontentloaded", timeout=30000)

            deadline = time.monotonic() + timeout_seconds
            while not is_logged_in(page, login_marker):
                if time.monotonic() > deadline:
                    raise RuntimeError(f"Login not completed within {timeout_seconds}s")
                page.wait_for_timeout(2000)

            save_storage_state(context, path)
            return path
        finally:
            browser.close()
