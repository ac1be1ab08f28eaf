"""Extraction engine: turns each trader's rendered position table into a Snapshot.

The engine never talks to the browser directly; it only sees a
``RenderHandle`` per trader, which keeps tests independent of Playwright.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Mapping, Optional, Protocol

from bs4 import BeautifulSoup
from bs4.element import Tag

from .models import Position, Snapshot, dedupe_positions

log = logging.getLogger(__name__)


# Column layout of the copy-management positions table
EXPECTED_CELLS = 8
COL_SYMBOL = 0
COL_SIZE = 1
COL_MARGIN = 2
COL_PNL = 7

ROW_SELECTOR = "tbody tr"
MEASURE_ROW_CLASS = "bn-web-table-measure-row"
SYMBOL_CLASS = ".t-caption2"
VALUE_CLASS = ".t-body3"


class RenderHandle(Protocol):
    """One live viewing context that shows a single trader's positions."""

    async def ready(self) -> bool:
        """True when a positions table is currently present."""
        ...

    async def extract_table(self) -> str:
        """HTML of the positions table."""
        ...

    async def dispose(self) -> None:
        ...


TableParser = Callable[[str, str], List[Position]]


# ──────────────────────────────────────────────────────────────
# Row parsing
# ──────────────────────────────────────────────────────────────

def _cell_text(cell: Tag, selector: Optional[str] = None, strict: bool = False) -> str:
    """Text of ``selector`` inside ``cell``; falls back to the whole cell unless strict."""
    if selector:
        inner = cell.select_one(selector)
        if inner is not None:
            return inner.get_text(" ", strip=True)
        if strict:
            return ""
    return cell.get_text(" ", strip=True)


def parse_row(cells: List[Tag], trader: str) -> Optional[Position]:
    """Parse one table row; None if the row is not a position row."""
    if len(cells) < EXPECTED_CELLS:
        return None
    symbol = _cell_text(cells[COL_SYMBOL], SYMBOL_CLASS, strict=True)
    if not symbol:
        return None
    pos = Position(
        trader=trader,
        symbol=symbol,
        size=_cell_text(cells[COL_SIZE], VALUE_CLASS),
        margin=_cell_text(cells[COL_MARGIN], VALUE_CLASS),
    )
    pos.parse_pnl(_cell_text(cells[COL_PNL]))
    return pos


def parse_table_html(html: str, trader: str) -> List[Position]:
    """Parse every usable row of a positions table.

    Short rows, rows without a symbol and the hidden layout "measure" row
    are skipped. Never raises on odd markup.
    """
    if not html or not html.strip():
        return []
    soup = BeautifulSoup(html, "html.parser")
    out: List[Position] = []
    for row in soup.select(ROW_SELECTOR):
        if MEASURE_ROW_CLASS in (row.get("class") or []):
            continue
        cells = row.find_all("td", recursive=False)
        try:
            pos = parse_row(cells, trader)
        except Exception:
            log.exception("row parse failed for %s", trader)
            continue
        if pos is not None:
            out.append(pos)
    return out


# ──────────────────────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────────────────────

class ExtractionEngine:
    """Runs one extraction per trader concurrently and merges the results."""

    def __init__(self, parser: TableParser = parse_table_html) -> None:
        self._parse = parser

    async def extract(self, contexts: Mapping[str, RenderHandle]) -> Snapshot:
        traders = list(contexts)
        results = await asyncio.gather(
            *(self._extract_one(t, contexts[t]) for t in traders)
        )
        merged: List[Position] = []
        for part in results:
            merged.extend(part)
        return Snapshot.from_positions(dedupe_positions(merged))

    async def _extract_one(self, trader: str, handle: RenderHandle) -> List[Position]:
        try:
            if not await handle.ready():
                log.debug("no table for %s", trader)
                return []
            html = await handle.extract_table()
            positions = self._parse(html, trader)
        except Exception as exc:
            log.warning("extraction failed for %s: %s", trader, exc)
            return []
        if positions:
            log.debug("%s: %d positions", trader, len(positions))
        return positions
