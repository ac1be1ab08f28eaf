"""Entry point: wires all components and runs the copy-trading monitor.

Architecture:
    ┌──────────────────┐
    │ SessionSupervisor │──Snapshot──→ PositionTracker ──quick_gainer──┐
    │ (one tab/trader)  │──Snapshot──→ PnLThresholdNotifier ──alert────┤
    └──────────────────┘──Snapshot──→ PnLHistory                      ↓
             ↑                      └──────────→ BroadcastHub ──→ clients
             │                                      │
             └──── refresh/restart/click ◄── MonitorApp (CommandHandlers)
                                               ├─ PortfolioStore
                                               ├─ ClosedPositionsStore ◄── tracker closed
                                               └─ OpenAIAnalysisService

Usage:
    python -m copytrade_monitor
    python -m copytrade_monitor --port 9000 --token s3cret --headless
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Coroutine, Dict, Optional, Set

from .analysis import AnalysisService, OpenAIAnalysisService
from .browser import BrowserSurface
from .config import Config, parse_args
from .hub import BroadcastHub
from .models import Position, Snapshot, TrackedPosition, iso_utc
from .pnl_history import PnLHistory
from .stores import ClosedPositionRecord, ClosedPositionsStore, PortfolioStore
from .supervisor import SessionSupervisor, Surface
from .tracker import PnLThresholdNotifier, PositionTracker

log = logging.getLogger(__name__)


class MonitorApp:
    """Owns every component and implements the hub's CommandHandlers."""

    def __init__(self, cfg: Config, surface: Optional[Surface] = None,
                 analysis: Optional[AnalysisService] = None) -> None:
        self.cfg = cfg

        # Components
        self.surface = surface or BrowserSurface(
            cfg.profile_dir, headless=cfg.headless,
            nav_timeout_s=cfg.nav_timeout_s, table_timeout_s=cfg.table_timeout_s,
        )
        self.supervisor = SessionSupervisor(cfg, self.surface)
        self.tracker = PositionTracker(cfg.quick_gainer_threshold, cfg.explosion_threshold)
        self.notifier = PnLThresholdNotifier(cfg.profit_alert_threshold, cfg.loss_alert_threshold)
        self.history = PnLHistory(cfg.avg_pnl_window_s)
        self.portfolio_store = PortfolioStore(cfg.data_dir)
        self.closed_store = ClosedPositionsStore(cfg.data_dir)
        self.analysis: AnalysisService = analysis or OpenAIAnalysisService(
            cfg.openai_api_key, cfg.openai_model, timeout_s=cfg.analysis_timeout_s,
        )
        self.hub = BroadcastHub(cfg, handlers=self)

        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._supervisor_task: Optional[asyncio.Task[None]] = None

        self._wire()

    def _wire(self) -> None:
        """Connect callbacks between components."""
        self.supervisor.on_snapshot(self.handle_snapshot)
        self.supervisor.on_restart_requested(
            lambda: self._spawn(self._restart_supervisor(), "supervisor-restart"))
        self.supervisor.on_growth(
            lambda value: self._spawn(self.hub.broadcast_message(
                {"type": "growth_scraped", "success": True, "value": value,
                 "timestamp": iso_utc()}), "growth-broadcast"))
        self.tracker.on_closed(self.record_closed)
        self.hub.on_client_count(lambda n: log.info("clients connected: %d", n))

    # ── Snapshot pipeline ──

    async def handle_snapshot(self, snapshot: Snapshot) -> None:
        alerts = self.tracker.update_positions(snapshot)
        pnl_alerts = self.notifier.update(snapshot)
        self.history.record(snapshot)

        await self.hub.broadcast_positions(snapshot)
        for alert in alerts:
            await self.hub.broadcast_quick_gainer(alert)
        for pnl_alert in pnl_alerts:
            await self.hub.broadcast_alert(pnl_alert)

    def record_closed(self, tracked: TrackedPosition) -> None:
        record = ClosedPositionRecord(
            trader=tracked.trader,
            symbol=tracked.symbol,
            side=tracked.side,
            size=tracked.size,
            pnl=float(tracked.current_pnl),
            pnl_percent=float(tracked.current_pnl_percentage),
            currency=tracked.currency,
            reason="closed",
        )
        self.closed_store.add_record(record)

    # ── Lifecycle ──

    async def run(self) -> None:
        """Start the hub, then the supervisor; block until shutdown."""
        self._stop_event = asyncio.Event()
        log.info("starting copy-trading monitor")
        log.info("thresholds: quick gainer %.1f%%, explosion %.1f%%, profit %.2f, loss %.2f",
                 self.cfg.quick_gainer_threshold, self.cfg.explosion_threshold,
                 self.cfg.profit_alert_threshold, self.cfg.loss_alert_threshold)

        await self.hub.start()
        self._supervisor_task = asyncio.create_task(
            self._start_supervisor(), name="supervisor-start")
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            log.info("runner cancelled")
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            self._supervisor_task.cancel()
            await asyncio.gather(self._supervisor_task, return_exceptions=True)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.hub.stop()
        await self.supervisor.stop()
        log.info("monitor stopped. %s", self.closed_store.summary())

    async def _start_supervisor(self) -> None:
        if not await self.supervisor.start():
            log.error("supervisor failed to start; hub keeps serving clients")

    async def _restart_supervisor(self) -> None:
        log.info("restarting supervisor")
        await self.supervisor.stop()
        self.tracker.clear()
        await self._start_supervisor()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── CommandHandlers ──

    def request_refresh(self) -> None:
        self.supervisor.request_refresh()

    def request_restart(self) -> None:
        self.supervisor.request_restart()

    async def click_tpsl(self, trader: str, symbol: str, size: str) -> bool:
        return await self.supervisor.click_tpsl(trader, symbol, size)

    async def close_position(self, trader: str, symbol: str, size: str) -> bool:
        return await self.supervisor.close_position(trader, symbol, size)

    async def close_modal(self, trader: str) -> bool:
        return await self.supervisor.close_modal(trader)

    async def scrape_growth(self) -> Optional[str]:
        return await self.supervisor.scrape_growth()

    async def analyze(self, symbol: str) -> Dict[str, Any]:
        position = self._find_position(symbol)
        result = await self.analysis.analyze_symbol(symbol, position)
        return result.to_message("analysis_result")

    async def analyze_portfolio(self) -> Dict[str, Any]:
        positions = list(self.hub.current_snapshot().positions)
        result = await self.analysis.analyze_portfolio(positions)
        return result.to_message("portfolio_analysis_result")

    def avg_pnl(self, unique_key: str) -> Dict[str, Any]:
        return self.history.average(unique_key)

    def portfolio(self) -> Dict[str, Any]:
        data = self.portfolio_store.summary()
        data["closedPositions"] = self.closed_store.summary()
        return data

    def update_initial_value(self, value: float, date: Optional[str]) -> bool:
        return self.portfolio_store.update_initial_value(value, date)

    def add_growth_update(self, value: float, notes: str, date: Optional[str]) -> bool:
        return self.portfolio_store.add_growth_update(value, notes, date)

    def update_current_value(self, value: float) -> bool:
        return self.portfolio_store.update_current_value(value)

    def add_withdrawal(self, amount: float, category: str, description: str,
                       currency: str) -> Optional[str]:
        return self.portfolio_store.add_withdrawal(amount, category, description, currency)

    def update_withdrawal(self, withdrawal_id: str, amount: Optional[float],
                          category: Optional[str], description: Optional[str],
                          currency: Optional[str]) -> bool:
        return self.portfolio_store.update_withdrawal(
            withdrawal_id, amount, category, description, currency)

    def delete_withdrawal(self, withdrawal_id: str) -> bool:
        return self.portfolio_store.delete_withdrawal(withdrawal_id)

    def _find_position(self, symbol: str) -> Optional[Position]:
        wanted = symbol.upper()
        for pos in self.hub.current_snapshot().positions:
            if pos.symbol.upper().startswith(wanted):
                return pos
        return None


def main(argv: Optional[list[str]] = None) -> None:
    cfg = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    app = MonitorApp(cfg)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Graceful shutdown on SIGINT/SIGTERM
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        loop.run_until_complete(app.run())
    except KeyboardInterrupt:
        log.info("interrupted")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
