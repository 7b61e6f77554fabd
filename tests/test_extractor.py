from unittest.mock import MagicMock

import pytest

from pagewatch.extractor import ExtractionError, PlaywrightExtractor, as_string_list


@pytest.fixture
def fake_playwright(monkeypatch):
    """Patch sync_playwright with a mock tree: playwright -> chromium -> browser -> page."""
    page = MagicMock(name="page")
    browser = MagicMock(name="browser")
    browser.new_page.return_value = page
    pw = MagicMock(name="playwright")
    pw.chromium.launch.return_value = browser

    cm = MagicMock(name="sync_playwright()")
    cm.__enter__.return_value = pw
    cm.__exit__.return_value = False

    monkeypatch.setattr("playwright.sync_api.sync_playwright", lambda: cm)
    return pw, browser, page


# as_string_list ---------------------------------------------------------------


def test_as_string_list_accepts_lists_and_tuples():
    assert as_string_list(["a", "b"]) == ["a", "b"]
    assert as_string_list(("a",)) == ["a"]
    assert as_string_list([]) == []


@pytest.mark.parametrize("value", [None, "a,b", {"a": 1}, 3])
def test_as_string_list_rejects_non_arrays(value):
    with pytest.raises(ExtractionError, match="array of strings"):
        as_string_list(value)


def test_as_string_list_rejects_non_string_elements():
    with pytest.raises(ExtractionError, match=r"result\[1\] is int"):
        as_string_list(["a", 2])


# PlaywrightExtractor ----------------------------------------------------------


def test_extract_renders_waits_and_evaluates(fake_playwright):
    pw, browser, page = fake_playwright
    page.evaluate.return_value = ["x", "y"]

    out = PlaywrightExtractor().extract("https://example.com", 3, "script()", timeout_sec=20)

    assert out == ["x", "y"]
    pw.chromium.launch.assert_called_once_with(headless=True, timeout=20000)
    page.goto.assert_called_once_with("https://example.com", timeout=20000)
    page.wait_for_timeout.assert_called_once_with(3000)
    page.evaluate.assert_called_once_with("script()")
    browser.close.assert_called_once()


def test_extract_skips_wait_when_zero(fake_playwright):
    _, _, page = fake_playwright
    page.evaluate.return_value = []

    PlaywrightExtractor().extract("https://example.com", 0, "s", timeout_sec=5)
    page.wait_for_timeout.assert_not_called()


def test_custom_chromium_path_is_passed_to_launch(fake_playwright):
    pw, _, page = fake_playwright
    page.evaluate.return_value = []

    PlaywrightExtractor("/opt/chromium/chrome").extract("https://example.com", 0, "s", timeout_sec=5)
    assert pw.chromium.launch.call_args.kwargs["executable_path"] == "/opt/chromium/chrome"


def test_navigation_error_becomes_extraction_error(fake_playwright):
    from playwright.sync_api import Error as PlaywrightError

    _, browser, page = fake_playwright
    page.goto.side_effect = PlaywrightError("net::ERR_CONNECTION_REFUSED")

    with pytest.raises(ExtractionError, match="ERR_CONNECTION_REFUSED"):
        PlaywrightExtractor().extract("https://example.com", 0, "s", timeout_sec=5)
    browser.close.assert_called_once()


def test_non_array_script_result_is_an_extraction_error(fake_playwright):
    _, _, page = fake_playwright
    page.evaluate.return_value = "not a list"

    with pytest.raises(ExtractionError):
        PlaywrightExtractor().extract("https://example.com", 0, "s", timeout_sec=5)
