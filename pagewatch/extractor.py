from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

log = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Raised when a page cannot be rendered or the extraction script fails."""


class PageExtractor(ABC):
    """
    Renders a URL and evaluates an extraction script in the page context.

    Contract:
      - extract() returns the script's result as an ordered list of strings.
      - Any navigation/evaluation failure, timeout, or non-list result raises ExtractionError.
      - timeout_sec bounds the whole call (launch, navigation, settle wait, evaluation).
    """

    @abstractmethod
    def extract(self, url: str, wait_seconds: int, script: str, *, timeout_sec: float) -> list[str]:
        raise NotImplementedError


class PlaywrightExtractor(PageExtractor):
    """
    Headless Chromium via Playwright's sync API.

    A fresh browser is launched per call and closed afterwards, so a call can run
    on any thread (the engine runs it on a worker thread to enforce the deadline).
    """

    def __init__(self, executable_path: str | None = None, *, headless: bool = True) -> None:
        self.executable_path = executable_path
        self.headless = headless

    def extract(self, url: str, wait_seconds: int, script: str, *, timeout_sec: float) -> list[str]:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        timeout_ms = max(1, int(timeout_sec * 1000))
        launch_kwargs: dict[str, Any] = {"headless": self.headless, "timeout": timeout_ms}
        if self.executable_path:
            launch_kwargs["executable_path"] = self.executable_path

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(**launch_kwargs)
                try:
                    page = browser.new_page()
                    page.set_default_timeout(timeout_ms)
                    page.goto(url, timeout=timeout_ms)
                    if wait_seconds > 0:
                        page.wait_for_timeout(wait_seconds * 1000)
                    value = page.evaluate(script)
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise ExtractionError(f"Could not query {url}: {e}") from e

        items = as_string_list(value)
        log.debug("Extracted %d item(s) from %s", len(items), url)
        return items


def as_string_list(value: Any) -> list[str]:
    """
    Validate an extraction result: a list (or tuple) whose elements are all strings.
    """
    if not isinstance(value, (list, tuple)):
        raise ExtractionError(f"Extraction script must return an array of strings (got {type(value).__name__}).")
    out: list[str] = []
    for i, item in enumerate(value):
        if not isinstance(item, str):
            raise ExtractionError(f"Extraction result[{i}] is {type(item).__name__}, expected string.")
        out.append(item)
    return out
