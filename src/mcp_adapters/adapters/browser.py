"""Browser automation adapter built on Playwright.

A single :class:`BrowserSession` owns the browser and its page.  Tool
handlers borrow the page through :meth:`BrowserSession.acquire`, which holds
the session lock for the duration of the call, so two tool calls never drive
the page at the same time.

``BROWSER_HEADLESS`` (default ``true``) selects the initial launch mode;
``browse`` and ``toggleHeadless`` can restart the browser in the other mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlparse

from mcp.server import Server
from mcp.types import Tool
from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..base import (
    Content,
    ToolHandler,
    build_server,
    configure_logging,
    image_content,
    require_args,
    run_stdio,
    text_response,
)
from ..errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 800}
LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]
SUMMARY_CHARS = 2000
SEARCH_LIMIT = 5
CONTEXT_CHARS = 50
NAVIGATION_TIMEOUT_MS = 5000

CLICK_SELECTORS = {
    "link": "a",
    "button": 'button, input[type="button"], input[type="submit"]',
    "any": 'a, button, input[type="button"], input[type="submit"], [role="button"], [onclick]',
}
IDENTIFIER_TYPES = ("label", "placeholder", "name", "id")

_TEXT_NODES_JS = """
() => {
  const skip = new Set(["SCRIPT", "STYLE", "NOSCRIPT"]);
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT);
  const out = [];
  let node;
  while ((node = walker.nextNode())) {
    const text = node.nodeValue.trim();
    if (!text || !node.parentElement || skip.has(node.parentElement.tagName)) continue;
    let el = node.parentElement;
    let heading = "";
    while (el && !heading) {
      const h = el.querySelector("h1, h2, h3, h4, h5, h6");
      if (h) heading = h.innerText.trim();
      el = el.parentElement;
    }
    out.push({ text, heading });
  }
  return out;
}
"""

EXTRACT_SCRIPTS = {
    "links": """
(sel) => Array.from(document.querySelectorAll(sel || "a[href]")).slice(0, 20)
  .map(a => ({ text: a.innerText.trim() || a.getAttribute("aria-label") || "", href: a.href }))
  .filter(a => a.text)
""",
    "images": """
(sel) => Array.from(document.querySelectorAll(sel || "img")).slice(0, 15)
  .map(img => ({ alt: img.alt || "[No description]", src: img.src, dimensions: `${img.width}x${img.height}` }))
""",
    "table": """
(sel) => {
  const table = document.querySelector(sel || "table");
  if (!table) return null;
  const rows = Array.from(table.querySelectorAll("tr"));
  let headers = [];
  const th = rows.length ? rows[0].querySelectorAll("th") : [];
  if (th.length) {
    headers = Array.from(th).map(c => c.innerText.trim());
    rows.shift();
  } else if (rows.length) {
    headers = Array.from(rows.shift().querySelectorAll("td")).map(c => c.innerText.trim());
  }
  const data = rows.slice(0, 10).map(r => Array.from(r.querySelectorAll("td")).map(c => c.innerText.trim()));
  return { headers, data };
}
""",
    "list": """
(sel) => {
  const list = document.querySelector(sel || "ul, ol");
  if (!list) return null;
  return Array.from(list.querySelectorAll("li")).slice(0, 15).map(li => li.innerText.trim());
}
""",
    "headings": """
(sel) => Array.from(document.querySelectorAll(sel || "h1, h2, h3, h4, h5, h6")).slice(0, 20)
  .map(h => ({ level: parseInt(h.tagName.substring(1)), text: h.innerText.trim() }))
""",
}


def _env_headless() -> bool:
    return os.environ.get("BROWSER_HEADLESS", "true").strip().lower() not in ("0", "false", "no")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class BrowserSession:
    """Owns one browser and one page; access goes through :meth:`acquire`."""

    def __init__(self, headless: bool = True, page: Page | None = None) -> None:
        self.headless = headless
        self.lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = page

    @property
    def is_open(self) -> bool:
        return self._page is not None

    async def open(self) -> Page:
        if self._page is None:
            logger.info("Launching Chromium (%s)", "headless" if self.headless else "visible")
            self._playwright = await async_playwright().start()
            try:
                self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
                self._page = await self._browser.new_page(viewport=VIEWPORT)
            except BaseException:
                await self.close()
                raise
        return self._page

    async def close(self) -> bool:
        """Close the browser; returns False if nothing was open."""
        was_open = self.is_open
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._page = self._browser = self._playwright = None
        if was_open:
            logger.info("Browser closed")
        return was_open

    async def restart(self, headless: bool) -> Page:
        await self.close()
        self.headless = headless
        return await self.open()

    @asynccontextmanager
    async def acquire(self, headless: bool | None = None) -> AsyncIterator[Page]:
        """Hold the session lock and yield the page, opening it if needed."""
        async with self.lock:
            try:
                if headless is not None:
                    page = await self.restart(headless)
                else:
                    page = await self.open()
                yield page
            except PlaywrightError as e:
                raise ExternalServiceError(f"Browser error: {e}", e) from e

    async def shutdown(self) -> None:
        async with self.lock:
            await self.close()


_session = BrowserSession(headless=_env_headless())


def get_session() -> BrowserSession:
    return _session


def set_session(session: BrowserSession) -> None:
    global _session
    _session = session


# ---------------------------------------------------------------------------
# Page helpers
# ---------------------------------------------------------------------------


def check_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Please provide a valid URL including http:// or https://")
    return url


def summarize(text: str, limit: int = SUMMARY_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def find_matches(
    nodes: list[dict[str, str]], query: str, limit: int = SEARCH_LIMIT, radius: int = CONTEXT_CHARS
) -> list[dict[str, str]]:
    """Case-insensitive matches of *query* in page text nodes, with context."""
    needle = query.lower()
    results = []
    for node in nodes:
        text = node.get("text", "")
        at = text.lower().find(needle)
        if at < 0:
            continue
        start, end = max(0, at - radius), min(len(text), at + len(needle) + radius)
        context = text[start:end]
        if start > 0:
            context = "..." + context
        if end < len(text):
            context += "..."
        results.append({"context": context, "heading": node.get("heading") or "No heading found"})
        if len(results) >= limit:
            break
    return results


async def _element_label(element: Any) -> str:
    for text in (await element.inner_text(), await element.get_attribute("value"), await element.get_attribute("aria-label")):
        if text and text.strip():
            return text.strip()
    return ""


async def find_clickable(page: Page, text: str, element_type: str) -> tuple[Any, str] | None:
    """The visible candidate with the shortest label containing *text*."""
    candidates = page.locator(CLICK_SELECTORS[element_type])
    best: tuple[Any, str] | None = None
    for i in range(await candidates.count()):
        element = candidates.nth(i)
        if not await element.is_visible():
            continue
        label = await _element_label(element)
        if text in label and (best is None or len(label) < len(best[1])):
            best = (element, label)
    return best


def _css_string(value: str) -> str:
    """Quote *value* for use inside a CSS attribute selector."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def field_locator(page: Page, identifier: str, identifier_type: str) -> Any:
    if identifier_type == "label":
        return page.get_by_label(identifier)
    if identifier_type == "placeholder":
        return page.get_by_placeholder(identifier)
    if identifier_type == "name":
        return page.locator(f"[name={_css_string(identifier)}]")
    return page.locator(f"[id={_css_string(identifier)}]")


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="browse",
            description="Open a URL and return its title, a text summary and a screenshot.",
            inputSchema={
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "Full URL including http:// or https://"},
                    "headless": {"type": "boolean", "description": "Restart the browser in this mode first"},
                },
                "required": ["url"],
            },
        ),
        Tool(
            name="searchPage",
            description="Find text on the current page; returns up to 5 matches with their section heading.",
            inputSchema={
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
        ),
        Tool(
            name="clickElement",
            description="Click the visible link or button whose text contains the given text.",
            inputSchema={
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "elementType": {"type": "string", "enum": list(CLICK_SELECTORS), "default": "any"},
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="fillForm",
            description="Fill an input, textarea or select on the current page.",
            inputSchema={
                "type": "object",
                "properties": {
                    "fieldIdentifier": {"type": "string"},
                    "value": {"type": "string"},
                    "identifierType": {"type": "string", "enum": list(IDENTIFIER_TYPES), "default": "label"},
                },
                "required": ["fieldIdentifier", "value"],
            },
        ),
        Tool(
            name="screenshot",
            description="Screenshot of the current page.",
            inputSchema={
                "type": "object",
                "properties": {"fullPage": {"type": "boolean", "default": False}},
            },
        ),
        Tool(
            name="extractData",
            description="Extract links, images, a table, a list or headings from the current page.",
            inputSchema={
                "type": "object",
                "properties": {
                    "dataType": {"type": "string", "enum": list(EXTRACT_SCRIPTS)},
                    "selector": {"type": "string", "description": "CSS selector overriding the default"},
                },
                "required": ["dataType"],
            },
        ),
        Tool(
            name="toggleHeadless",
            description="Restart the browser in headless or visible mode.",
            inputSchema={
                "type": "object",
                "properties": {"headless": {"type": "boolean", "default": True}},
            },
        ),
        Tool(
            name="closeBrowser",
            description="Close the browser; the next call opens a new one.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


async def _handle_browse(args: dict[str, Any]) -> list[Content]:
    require_args(args, "url")
    url = check_url(args["url"])
    headless = args.get("headless")
    async with get_session().acquire(None if headless is None else bool(headless)) as page:
        logger.info("Navigating to %s", url)
        await page.goto(url, wait_until="networkidle")
        title = await page.title()
        text = await page.inner_text("body")
        shot = await page.screenshot()
    return [
        *text_response(f"Successfully loaded: {title}\n\nPage content summary:\n{summarize(text)}"),
        image_content(shot),
    ]


async def _handle_search(args: dict[str, Any]) -> list[Content]:
    require_args(args, "query")
    query = args["query"]
    async with get_session().acquire() as page:
        nodes = await page.evaluate(_TEXT_NODES_JS)
    results = find_matches(nodes or [], query)
    if not results:
        return text_response(f'No results found for "{query}" on the current page.')
    body = "\n\n".join(
        f"Result {i} (Section: {r['heading']}):\n{r['context']}" for i, r in enumerate(results, start=1)
    )
    return text_response(f'Found {len(results)} matches for "{query}" on the current page:\n\n{body}')


async def _handle_click(args: dict[str, Any]) -> list[Content]:
    require_args(args, "text")
    element_type = args.get("elementType") or "any"
    if element_type not in CLICK_SELECTORS:
        raise ValidationError(f"elementType must be one of {', '.join(CLICK_SELECTORS)}")
    async with get_session().acquire() as page:
        found = await find_clickable(page, args["text"], element_type)
        if found is None:
            raise ValidationError(f'No visible {element_type} elements containing "{args["text"]}" found')
        element, label = found
        await element.click()
        try:
            await page.wait_for_load_state("load", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            logger.debug("No navigation after clicking %r", label)
        title = await page.title()
        shot = await page.screenshot()
    kind = "element" if element_type == "any" else element_type
    return [*text_response(f'Clicked on {kind}: "{label}"\nCurrent page: {title}'), image_content(shot)]


async def _handle_fill(args: dict[str, Any]) -> list[Content]:
    require_args(args, "fieldIdentifier")
    identifier = args["fieldIdentifier"]
    value = str(args.get("value", ""))
    identifier_type = args.get("identifierType") or "label"
    if identifier_type not in IDENTIFIER_TYPES:
        raise ValidationError(f"identifierType must be one of {', '.join(IDENTIFIER_TYPES)}")
    async with get_session().acquire() as page:
        matches = field_locator(page, identifier, identifier_type)
        if await matches.count() == 0:
            raise ValidationError(f'No form field found with {identifier_type} "{identifier}"')
        field = matches.first
        tag = await field.evaluate("el => el.tagName.toLowerCase()")
        if tag == "select":
            await field.select_option(value)
        else:
            await field.fill(value)
        shot = await page.screenshot()
    return [*text_response(f'Filled {tag} field "{identifier}" with "{value}"'), image_content(shot)]


async def _handle_screenshot(args: dict[str, Any]) -> list[Content]:
    full_page = bool(args.get("fullPage", False))
    async with get_session().acquire() as page:
        shot = await page.screenshot(full_page=full_page)
    return [*text_response(f"Screenshot captured{' (full page)' if full_page else ''}:"), image_content(shot)]


async def _handle_extract(args: dict[str, Any]) -> list[Content]:
    require_args(args, "dataType")
    data_type = args["dataType"]
    if data_type not in EXTRACT_SCRIPTS:
        raise ValidationError(f"dataType must be one of {', '.join(EXTRACT_SCRIPTS)}")
    selector = args.get("selector") or None
    async with get_session().acquire() as page:
        data = await page.evaluate(EXTRACT_SCRIPTS[data_type], selector)
    if not data:
        suffix = f" matching selector: {selector}" if selector else ""
        return text_response(f"No {data_type} found on the page{suffix}")
    return text_response(f"Extracted {data_type} from page:\n\n{json.dumps(data, indent=2)}")


async def _handle_toggle(args: dict[str, Any]) -> list[Content]:
    headless = bool(args.get("headless", True))
    async with get_session().acquire(headless):
        pass
    return text_response(f"Browser restarted in {'headless' if headless else 'visible'} mode")


async def _handle_close(args: dict[str, Any]) -> list[Content]:
    session = get_session()
    async with session.lock:
        closed = await session.close()
    return text_response("Browser closed." if closed else "Browser was not open.")


HANDLERS: dict[str, ToolHandler] = {
    "browse": _handle_browse,
    "searchPage": _handle_search,
    "clickElement": _handle_click,
    "fillForm": _handle_fill,
    "screenshot": _handle_screenshot,
    "extractData": _handle_extract,
    "toggleHeadless": _handle_toggle,
    "closeBrowser": _handle_close,
}


def create_mcp_server(name: str = "web-browser") -> Server:
    return build_server(name, TOOLS, HANDLERS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server(), on_shutdown=get_session().shutdown)


if __name__ == "__main__":
    main_stdio()
