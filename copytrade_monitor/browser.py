"""Playwright rendering surface for the copy-management pages.

A single persistent Chromium context (user profile on disk, so a manual
login survives restarts) hands out ``BrowserPage`` wrappers. Each wrapper
is the ``RenderHandle`` the extraction engine reads from, plus the page
operations the supervisor drives. All DOM knowledge lives in the JS
snippets below.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from playwright.async_api import (
    BrowserContext, Page, Playwright, async_playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Selectors / page scripts
# ──────────────────────────────────────────────────────────────

TRADER_NAME_SELECTOR = ".t-subtitle4.text-PrimaryText.cursor-pointer"
GROWTH_VALUE_SELECTOR = r"div.typography-headline0.md\:typography-headline2"

_JS_HAS_TABLE = "() => !!document.querySelector('table')"

_JS_TABLE_HTML = "() => document.querySelector('table')?.outerHTML || ''"

_JS_ROW_COUNT = """() => document.querySelectorAll(
    'tbody.bn-web-table-tbody tr:not(.bn-web-table-measure-row)').length"""

_JS_LIST_TRADERS = """(sel) => Array.from(document.querySelectorAll(sel))
    .map(el => el.textContent.trim()).filter(t => t.length > 0)"""

_JS_EXPAND_TRADER = r"""(name) => {
    const main = document.querySelector('.copy-mgmt-wrap');
    if (!main) return false;
    const blocks = main.querySelectorAll('.bn-flex.py-\\[24px\\].flex-col.gap-\\[24px\\]');
    for (const block of blocks) {
        const nameEl = block.querySelector('.t-subtitle4.text-PrimaryText.cursor-pointer');
        if (!nameEl || nameEl.textContent.trim() !== name) continue;
        const btn = block.querySelector('.bn-flex.gap-\\[4px\\].items-center.cursor-pointer');
        if (btn) { btn.click(); return true; }
    }
    return false;
}"""

_JS_STRIP_CHROME = """() => {
    document.querySelectorAll('header').forEach(h => h.remove());
    document.querySelectorAll('footer').forEach(f => f.remove());
    document.querySelectorAll('.bn-flex.grid.grid-cols-1').forEach(g => g.remove());
}"""

# Finds the row whose column 1 contains the symbol AND column 2 the size,
# then dispatches a click on the element matched inside ``column``.
_JS_CLICK_IN_ROW = """([symbol, size, column, target]) => {
    const rows = document.querySelectorAll('tbody.bn-web-table-tbody tr[role="row"]');
    for (const row of rows) {
        const c1 = row.querySelector('td[aria-colindex="1"]');
        const c2 = row.querySelector('td[aria-colindex="2"]');
        if (!c1 || !c2) continue;
        const symText = c1.innerText || c1.textContent || '';
        const sizeText = c2.innerText || c2.textContent || '';
        if (!symText.includes(symbol) || !sizeText.includes(size)) continue;
        const cell = row.querySelector(`td[aria-colindex="${column}"]`);
        const el = cell && cell.querySelector(target);
        if (el) {
            el.dispatchEvent(new MouseEvent('click', {bubbles: true, cancelable: true}));
            return true;
        }
    }
    return false;
}"""

_JS_CONFIRM_CLOSE = """() => {
    const click = el => el.dispatchEvent(new MouseEvent('click', {bubbles: true, cancelable: true}));
    const buttons = document.querySelectorAll('.bn-modal button, .bn-dialog button, [class*="modal"] button');
    for (const btn of buttons) {
        const text = (btn.innerText || btn.textContent || '').trim().toLowerCase();
        if (text.includes('confirm') || text === 'close') { click(btn); return true; }
    }
    const primary = document.querySelector(
        '.bn-modal .bn-button--primary, .bn-modal [class*="yellow"], .bn-modal button[class*="primary"]');
    if (primary) { click(primary); return true; }
    return false;
}"""

_JS_CLOSE_MODAL = """() => {
    const btn = document.querySelector('.bn-modal-header-next[role="button"][aria-label="Close"]');
    if (btn) { btn.click(); return true; }
    const svg = document.querySelector('.bn-modal-header-next svg');
    if (svg && svg.parentElement) { svg.parentElement.click(); return true; }
    return false;
}"""

_JS_GROWTH_VALUE = """(sel) => document.querySelector(sel)?.textContent?.trim() || ''"""

TPSL_COLUMN = 9
TPSL_TARGET = 'svg[viewBox="0 0 24 24"]'
CLOSE_COLUMN = 10
CLOSE_TARGET = "span.cursor-pointer"


class BrowserPage:
    """One tab; wraps a Playwright Page with the operations we need."""

    def __init__(self, page: Page, trader: str = "",
                 nav_timeout_s: float = 60.0, table_timeout_s: float = 10.0) -> None:
        self._page = page
        self.trader = trader
        self._nav_ms = nav_timeout_s * 1000.0
        self._table_ms = table_timeout_s * 1000.0

    @property
    def is_closed(self) -> bool:
        return self._page.is_closed()

    # ── RenderHandle ──

    async def ready(self) -> bool:
        if self._page.is_closed():
            return False
        return bool(await self._page.evaluate(_JS_HAS_TABLE))

    async def extract_table(self) -> str:
        return str(await self._page.evaluate(_JS_TABLE_HTML) or "")

    async def dispose(self) -> None:
        if self._page.is_closed():
            return
        try:
            await self._page.close()
        except PlaywrightError as exc:
            log.debug("page close failed: %s", exc)

    # ── Navigation ──

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="networkidle", timeout=self._nav_ms)

    async def reload(self) -> None:
        await self._page.reload(wait_until="networkidle", timeout=self._nav_ms)

    async def bring_to_front(self) -> None:
        await self._page.bring_to_front()

    async def list_entities(self) -> List[str]:
        names = await self._page.evaluate(_JS_LIST_TRADERS, TRADER_NAME_SELECTOR)
        return [str(n) for n in names or []]

    async def expand_entity(self, name: str) -> bool:
        return bool(await self._page.evaluate(_JS_EXPAND_TRADER, name))

    async def wait_for_table(self, timeout_s: Optional[float] = None) -> bool:
        timeout = self._table_ms if timeout_s is None else timeout_s * 1000.0
        try:
            await self._page.wait_for_selector("table", timeout=timeout)
            return True
        except PlaywrightTimeoutError:
            return False

    async def row_count(self) -> int:
        return int(await self._page.evaluate(_JS_ROW_COUNT) or 0)

    async def strip_chrome(self) -> None:
        await self._page.evaluate(_JS_STRIP_CHROME)

    # ── Position actions ──

    async def click_tpsl(self, symbol: str, size: str) -> bool:
        return bool(await self._page.evaluate(
            _JS_CLICK_IN_ROW, [symbol, size, TPSL_COLUMN, TPSL_TARGET]))

    async def click_close_position(self, symbol: str, size: str) -> bool:
        return bool(await self._page.evaluate(
            _JS_CLICK_IN_ROW, [symbol, size, CLOSE_COLUMN, CLOSE_TARGET]))

    async def confirm_close(self) -> bool:
        return bool(await self._page.evaluate(_JS_CONFIRM_CLOSE))

    async def close_modal(self) -> bool:
        return bool(await self._page.evaluate(_JS_CLOSE_MODAL))

    async def read_growth_value(self) -> Optional[str]:
        if not await self.wait_for_element(GROWTH_VALUE_SELECTOR):
            return None
        text = await self._page.evaluate(_JS_GROWTH_VALUE, GROWTH_VALUE_SELECTOR)
        return str(text) if text else None

    async def wait_for_element(self, selector: str) -> bool:
        try:
            await self._page.wait_for_selector(selector, timeout=self._table_ms)
            return True
        except PlaywrightTimeoutError:
            return False


class BrowserSurface:
    """Owns the Playwright driver and the persistent browser context.

    Usage:
        surface = BrowserSurface(profile_dir, headless=False)
        await surface.start()
        page = await surface.primary_page()
        tab = await surface.new_page(trader="alice")
        await surface.close()
    """

    def __init__(self, profile_dir: str, headless: bool = False,
                 nav_timeout_s: float = 60.0, table_timeout_s: float = 10.0) -> None:
        self._profile_dir = profile_dir
        self._headless = headless
        self._nav_timeout_s = nav_timeout_s
        self._table_timeout_s = table_timeout_s
        self._pw: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None

    @property
    def is_running(self) -> bool:
        return self._context is not None

    async def start(self) -> None:
        if self._context is not None:
            return
        Path(self._profile_dir).mkdir(parents=True, exist_ok=True)
        self._pw = await async_playwright().start()
        self._context = await self._pw.chromium.launch_persistent_context(
            self._profile_dir,
            headless=self._headless,
            viewport={"width": 1280, "height": 900},
        )
        log.info("browser started (profile %s, headless=%s)",
                 self._profile_dir, self._headless)

    def _wrap(self, page: Page, trader: str) -> BrowserPage:
        return BrowserPage(page, trader, self._nav_timeout_s, self._table_timeout_s)

    async def primary_page(self) -> BrowserPage:
        ctx = self._require()
        page = ctx.pages[0] if ctx.pages else await ctx.new_page()
        return self._wrap(page, "")

    async def new_page(self, trader: str = "") -> BrowserPage:
        return self._wrap(await self._require().new_page(), trader)

    async def close(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as exc:
                log.debug("context close failed: %s", exc)
            self._context = None
        if self._pw is not None:
            await self._pw.stop()
            self._pw = None
        log.info("browser closed")

    def _require(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("browser surface not started")
        return self._context
