"""Session supervisor: owns the browser pages and drives the polling loop.

State machine:

    STOPPED ──start()──→ DISCOVERING ──→ PER_ENTITY_SETUP ──→ POLLING
       ↑                     │ (no traders after retry)          │
       └─────────────────────┴──────────────stop()───────────────┘

Discovery reads the followed-trader names from the copy-management page
(waiting for a manual login if needed). Setup opens one tab per trader and
expands its positions table. Polling runs the extraction engine over every
ready tab once per interval and publishes non-empty snapshots.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from .config import Config
from .extraction import ExtractionEngine, RenderHandle
from .models import Snapshot

log = logging.getLogger(__name__)

SnapshotCallback = Callable[[Snapshot], Optional[Awaitable[None]]]
RestartCallback = Callable[[], None]
GrowthCallback = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]

EXPAND_ATTEMPTS = 3
EXPAND_BACKOFF_S = 1.5
CONFIRM_DELAY_S = 0.5
RELOAD_SETTLE_S = 3.0


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    DISCOVERING = "discovering"
    PER_ENTITY_SETUP = "per_entity_setup"
    POLLING = "polling"


class PageHandle(RenderHandle, Protocol):
    """Page operations the supervisor needs beyond the render handle."""

    @property
    def is_closed(self) -> bool: ...

    async def goto(self, url: str) -> None: ...

    async def reload(self) -> None: ...

    async def bring_to_front(self) -> None: ...

    async def list_entities(self) -> List[str]: ...

    async def expand_entity(self, name: str) -> bool: ...

    async def wait_for_table(self, timeout_s: Optional[float] = None) -> bool: ...

    async def row_count(self) -> int: ...

    async def strip_chrome(self) -> None: ...

    async def click_tpsl(self, symbol: str, size: str) -> bool: ...

    async def click_close_position(self, symbol: str, size: str) -> bool: ...

    async def confirm_close(self) -> bool: ...

    async def close_modal(self) -> bool: ...

    async def read_growth_value(self) -> Optional[str]: ...


class Surface(Protocol):
    async def start(self) -> None: ...

    async def primary_page(self) -> PageHandle: ...

    async def new_page(self, trader: str = "") -> PageHandle: ...

    async def close(self) -> None: ...


class SessionSupervisor:
    """Drives the rendering surface and publishes one Snapshot per cycle.

    Usage:
        sup = SessionSupervisor(cfg, surface)
        sup.on_snapshot(callback)          # cb(Snapshot), may be async
        sup.on_restart_requested(cb)       # cb()
        ok = await sup.start()
        ...
        await sup.stop()
    """

    def __init__(self, cfg: Config, surface: Surface,
                 engine: Optional[ExtractionEngine] = None,
                 sleep: Sleep = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._cfg = cfg
        self._surface = surface
        self._engine = engine or ExtractionEngine()
        self._sleep = sleep
        self._clock = clock

        self._state = SupervisorState.STOPPED
        self._primary: Optional[PageHandle] = None
        self._contexts: Dict[str, PageHandle] = {}
        self._traders: List[str] = []

        self._running = False
        self._task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self._refresh_requested = False
        self._restart_requested = False
        self._last_refresh = 0.0

        self.cycle_count = 0
        self.last_snapshot: Optional[Snapshot] = None
        self.last_growth: Optional[str] = None

        self._snapshot_cbs: List[SnapshotCallback] = []
        self._restart_cbs: List[RestartCallback] = []
        self._growth_cbs: List[GrowthCallback] = []

    # ── Public API ──

    def on_snapshot(self, cb: SnapshotCallback) -> None:
        self._snapshot_cbs.append(cb)

    def on_restart_requested(self, cb: RestartCallback) -> None:
        self._restart_cbs.append(cb)

    def on_growth(self, cb: GrowthCallback) -> None:
        self._growth_cbs.append(cb)

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def traders(self) -> List[str]:
        return list(self._traders)

    @property
    def contexts(self) -> Dict[str, PageHandle]:
        return dict(self._contexts)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Discover traders, open one tab each and start polling.

        Returns False when no trader can be discovered (after one reload)
        or none of the trader tabs could be set up.
        """
        if self._running:
            return True
        self._restart_requested = False
        self._refresh_requested = False

        self._state = SupervisorState.DISCOVERING
        try:
            await self._surface.start()
            traders = await self._discover()
        except Exception:
            log.exception("discovery failed")
            traders = []
        if not traders:
            log.error("no followed traders found; start aborted")
            await self._teardown()
            return False
        self._traders = traders
        log.info("discovered %d traders: %s", len(traders), ", ".join(traders))

        self._state = SupervisorState.PER_ENTITY_SETUP
        await self._setup_entities(traders)
        if not self._contexts:
            log.error("no trader tab became ready; start aborted")
            await self._teardown()
            return False

        await self._scrape_growth_on(self._primary)

        self._state = SupervisorState.POLLING
        self._running = True
        self._last_refresh = self._clock()
        self._task = asyncio.create_task(self._poll_loop(), name="supervisor-poll")
        log.info("polling %d/%d traders every %.1fs",
                 len(self._contexts), len(traders), self._cfg.poll_interval_s)
        return True

    async def stop(self) -> None:
        self._running = False
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._teardown()
        log.info("supervisor stopped")

    def request_refresh(self) -> None:
        """Reload and re-expand every trader tab at the next cycle boundary."""
        self._refresh_requested = True

    def request_restart(self) -> None:
        """Leave the polling loop and ask the owner to restart us."""
        self._restart_requested = True

    async def poll_once(self) -> Snapshot:
        """One polling cycle; publishes the snapshot when it has positions."""
        async with self._lock:
            snapshot = await self._engine.extract(self._ready_contexts())
        self.cycle_count += 1
        if not snapshot.is_empty:
            self.last_snapshot = snapshot
            await self._publish(snapshot)
        if self._cfg.housekeeping_every > 0 and self.cycle_count % self._cfg.housekeeping_every == 0:
            self.housekeeping()
        return snapshot

    async def refresh_all(self) -> None:
        async with self._lock:
            self._refresh_requested = False
            self._last_refresh = self._clock()
            log.info("refreshing %d trader tabs", len(self._contexts))
            for trader, page in list(self._contexts.items()):
                try:
                    await page.reload()
                    if not await self._expand(page, trader):
                        log.warning("could not re-expand %s after reload", trader)
                    elif not await page.wait_for_table(self._cfg.table_timeout_s):
                        log.debug("no table yet for %s after refresh", trader)
                except Exception:
                    log.exception("refresh failed for %s", trader)

    def housekeeping(self) -> int:
        """Drop tabs that were closed underneath us; returns how many."""
        closed = [t for t, p in self._contexts.items() if p.is_closed]
        for trader in closed:
            del self._contexts[trader]
            log.warning("tab for %s was closed; dropped", trader)
        return len(closed)

    # ── Position actions (used by remote commands) ──

    async def click_tpsl(self, trader: str, symbol: str, size: str) -> bool:
        page = self._page_for(trader)
        if page is None:
            return False
        try:
            async with self._lock:
                await page.bring_to_front()
                ok = await page.click_tpsl(symbol, size)
        except Exception:
            log.exception("tp/sl click failed for %s %s", trader, symbol)
            return False
        if not ok:
            log.warning("tp/sl control not found for %s %s (%s)", trader, symbol, size)
        return ok

    async def close_position(self, trader: str, symbol: str, size: str) -> bool:
        page = self._page_for(trader)
        if page is None:
            return False
        try:
            async with self._lock:
                await page.bring_to_front()
                if not await page.click_close_position(symbol, size):
                    log.warning("close control not found for %s %s (%s)", trader, symbol, size)
                    return False
                await self._sleep(CONFIRM_DELAY_S)
                confirmed = await page.confirm_close()
        except Exception:
            log.exception("close position failed for %s %s", trader, symbol)
            return False
        if not confirmed:
            log.warning("close confirmation button not found for %s", trader)
        return confirmed

    async def close_modal(self, trader: str) -> bool:
        page = self._page_for(trader)
        if page is None:
            return False
        try:
            async with self._lock:
                return await page.close_modal()
        except Exception:
            log.exception("close modal failed for %s", trader)
            return False

    async def scrape_growth(self) -> Optional[str]:
        """Read the account growth figure from a throwaway tab."""
        try:
            page = await self._surface.new_page()
        except Exception:
            log.exception("could not open tab for growth scrape")
            return None
        try:
            return await self._scrape_growth_on(page)
        finally:
            await page.dispose()

    # ── Internals ──

    async def _discover(self) -> List[str]:
        primary = await self._surface.primary_page()
        self._primary = primary
        await primary.goto(self._cfg.copy_management_url)
        traders = await self._wait_for_login(primary)
        if not traders:
            log.warning("no traders visible; reloading once")
            await primary.reload()
            await self._sleep(RELOAD_SETTLE_S)
            traders = await primary.list_entities()
        return _unique(traders)

    async def _wait_for_login(self, page: PageHandle) -> List[str]:
        deadline = self._clock() + self._cfg.login_timeout_s
        warned = False
        while True:
            traders = await page.list_entities()
            if traders or self._clock() >= deadline:
                return traders
            if not warned:
                log.info("waiting for login (up to %.0fs)...", self._cfg.login_timeout_s)
                warned = True
            await self._sleep(self._cfg.login_poll_s)

    async def _setup_entities(self, traders: List[str]) -> None:
        for trader in traders:
            page: Optional[PageHandle] = None
            try:
                page = await self._surface.new_page(trader)
                await page.goto(self._cfg.copy_management_url)
                await page.strip_chrome()
                if not await self._expand(page, trader):
                    log.warning("could not expand %s; skipped", trader)
                    await page.dispose()
                    continue
                if not await page.wait_for_table(self._cfg.table_timeout_s):
                    log.warning("no positions table for %s within %.0fs; skipped",
                                trader, self._cfg.table_timeout_s)
                    await page.dispose()
                    continue
                rows = await page.row_count()
                self._contexts[trader] = page
                log.info("tab ready for %s (%d rows)", trader, rows)
            except Exception:
                log.exception("setup failed for %s; skipped", trader)
                if page is not None:
                    await page.dispose()

    async def _expand(self, page: PageHandle, trader: str) -> bool:
        """Click the trader's expand control, retrying with growing backoff."""
        for attempt in range(1, EXPAND_ATTEMPTS + 1):
            await self._sleep(EXPAND_BACKOFF_S * attempt)
            if await page.expand_entity(trader):
                return True
        return False

    async def _scrape_growth_on(self, page: Optional[PageHandle]) -> Optional[str]:
        if page is None:
            return None
        try:
            await page.goto(self._cfg.copy_trading_url)
            value = await page.read_growth_value()
        except Exception:
            log.exception("growth scrape failed")
            return None
        if value is None:
            log.warning("growth value not found")
            return None
        self.last_growth = value
        log.info("account growth: %s", value)
        for cb in self._growth_cbs:
            try:
                cb(value)
            except Exception:
                log.exception("growth callback error")
        return value

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                if self._restart_requested:
                    break
                if self._refresh_requested or self._auto_refresh_due():
                    await self.refresh_all()
                await self.poll_once()
                await self._sleep(self._cfg.poll_interval_s)
            except asyncio.CancelledError:
                self._running = False
                return
            except Exception:
                log.exception("polling cycle failed; backing off %.0fs",
                              self._cfg.error_backoff_s)
                await self._sleep(self._cfg.error_backoff_s)

        if self._restart_requested:
            self._restart_requested = False
            self._running = False
            log.info("restart requested")
            for cb in self._restart_cbs:
                try:
                    cb()
                except Exception:
                    log.exception("restart callback error")

    def _auto_refresh_due(self) -> bool:
        period = self._cfg.auto_refresh_minutes * 60.0
        return period > 0 and self._clock() - self._last_refresh >= period

    def _ready_contexts(self) -> Dict[str, RenderHandle]:
        return {t: p for t, p in self._contexts.items() if not p.is_closed}

    def _page_for(self, trader: str) -> Optional[PageHandle]:
        page = self._contexts.get(trader)
        if page is None or page.is_closed:
            log.warning("no open tab for trader %s", trader)
            return None
        return page

    async def _publish(self, snapshot: Snapshot) -> None:
        for cb in self._snapshot_cbs:
            try:
                res = cb(snapshot)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                log.exception("snapshot callback error")

    async def _teardown(self) -> None:
        for trader, page in list(self._contexts.items()):
            try:
                await page.dispose()
            except Exception:
                log.exception("dispose failed for %s", trader)
        self._contexts.clear()
        self._primary = None
        try:
            await self._surface.close()
        except Exception:
            log.exception("surface close failed")
        self._state = SupervisorState.STOPPED


def _unique(names: List[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for name in names:
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            out.append(name)
    return out
