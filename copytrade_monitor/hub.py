"""Broadcast hub: websocket fan-out of snapshots and alerts, plus commands.

One aiohttp listener serves both:
  - plain GET  → JSON status {status, clients, positions, requiresAuth, timestamp}
  - websocket  → per-client session

Per-client state machine:

    connected ──(no token)──────────────→ authenticated ──→ closed
        └──(token)──→ awaiting auth ──ok──↗       │
                            └──fail/timeout──→ closed (policy violation)

Only authenticated clients receive pushes. A client whose send fails is
purged after the broadcast pass. Inbound frames are decoded once by
``commands.decode_command`` and dispatched through an explicit table.
"""
from __future__ import annotations

import asyncio
import hmac
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiohttp import WSCloseCode, WSMsgType, web

from .commands import (
    AddWithdrawalCommand, AnalyzeCommand, AuthCommand, AvgPnLCommand,
    CloseModalCommand, Command, CommandType, CurrentValueCommand,
    DeleteWithdrawalCommand, GrowthUpdateCommand, InitialValueCommand,
    PositionActionCommand, ProtocolError, UnknownCommandError,
    UpdateWithdrawalCommand, decode_command,
)
from .config import Config
from .interfaces import CommandHandlers
from .models import EMPTY_SNAPSHOT, Alert, PnLAlert, Snapshot, iso_utc

log = logging.getLogger(__name__)

ClientCountCallback = Callable[[int], None]
_Handler = Callable[["Client", Any], Awaitable[None]]


@dataclass(slots=True)
class Client:
    id: str
    ws: web.WebSocketResponse
    authenticated: bool = False
    remote: str = ""


@dataclass(slots=True)
class _Route:
    handler: _Handler
    result_type: str           # reply type used when the handler fails
    background: bool = False   # run outside the client's read loop


class BroadcastHub:
    """Multi-client websocket hub.

    Usage:
        hub = BroadcastHub(cfg, handlers)
        hub.on_client_count(cb)              # cb(n_clients)
        await hub.start()
        await hub.broadcast_positions(snapshot)
        await hub.broadcast_alert(pnl_alert)
        await hub.broadcast_quick_gainer(alert)
        await hub.stop()
    """

    def __init__(self, cfg: Config, handlers: Optional[CommandHandlers] = None) -> None:
        self._cfg = cfg
        self._handlers = handlers
        self._clients: Dict[str, Client] = {}
        self._latest: Snapshot = EMPTY_SNAPSHOT
        self._latest_lock = threading.Lock()
        self._count_cbs: List[ClientCountCallback] = []
        self._tasks: Set[asyncio.Task[None]] = set()
        self._runner: Optional[web.AppRunner] = None
        self._running = False

        self.app = web.Application()
        self.app.router.add_get("/", self._handle_request)
        self.app.router.add_get("/ws", self._handle_request)

        self._routes: Dict[CommandType, _Route] = {
            CommandType.PING: _Route(self._cmd_ping, "pong"),
            CommandType.GET_POSITIONS: _Route(self._cmd_get_positions, "positions"),
            CommandType.REFRESH: _Route(self._cmd_refresh, "refresh_started"),
            CommandType.RESTART: _Route(self._cmd_restart, "restart_started"),
            CommandType.ANALYZE: _Route(self._cmd_analyze, "analysis_result", True),
            CommandType.PORTFOLIO_ANALYSIS: _Route(
                self._cmd_portfolio_analysis, "portfolio_analysis_result", True),
            CommandType.CLICK_TPSL: _Route(self._cmd_click_tpsl, "tpsl_click_result"),
            CommandType.CLOSE_POSITION: _Route(self._cmd_close_position, "close_position_result"),
            CommandType.CLOSE_MODAL: _Route(self._cmd_close_modal, "close_modal_result"),
            CommandType.GET_AVG_PNL: _Route(self._cmd_avg_pnl, "avg_pnl_result"),
            CommandType.GET_PORTFOLIO: _Route(self._cmd_get_portfolio, "portfolio_data"),
            CommandType.UPDATE_INITIAL_VALUE: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.ADD_GROWTH_UPDATE: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.UPDATE_CURRENT_VALUE: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.ADD_WITHDRAWAL: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.UPDATE_WITHDRAWAL: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.DELETE_WITHDRAWAL: _Route(self._cmd_portfolio_update, "portfolio_update_result"),
            CommandType.SCRAPE_GROWTH: _Route(self._cmd_scrape_growth, "growth_scraped", True),
        }

    # ── Public API ──

    def on_client_count(self, cb: ClientCountCallback) -> None:
        self._count_cbs.append(cb)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def authenticated_count(self) -> int:
        return sum(1 for c in self._clients.values() if c.authenticated)

    def current_snapshot(self) -> Snapshot:
        with self._latest_lock:
            return self._latest

    def set_snapshot(self, snapshot: Snapshot) -> None:
        with self._latest_lock:
            self._latest = snapshot

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running",
            "clients": self.client_count,
            "positions": len(self.current_snapshot()),
            "requiresAuth": self._cfg.requires_auth,
            "timestamp": iso_utc(),
        }

    async def start(self) -> None:
        self._running = True
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._cfg.ws_host, self._cfg.ws_port)
        await site.start()
        log.info("hub listening on ws://%s:%d (auth %s)", self._cfg.ws_host,
                 self._cfg.ws_port, "on" if self._cfg.requires_auth else "off")

    async def stop(self) -> None:
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        clients = list(self._clients.values())
        if clients:
            closing = asyncio.gather(
                *(c.ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutting down")
                  for c in clients),
                return_exceptions=True,
            )
            try:
                await asyncio.wait_for(closing, timeout=self._cfg.shutdown_grace_s)
            except asyncio.TimeoutError:
                log.warning("clients did not close within %.1fs", self._cfg.shutdown_grace_s)
        self._clients.clear()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("hub stopped")

    async def broadcast_positions(self, snapshot: Snapshot) -> int:
        self.set_snapshot(snapshot)
        return await self.broadcast_message(snapshot.to_message())

    async def broadcast_alert(self, alert: PnLAlert) -> int:
        return await self.broadcast_message(alert.to_message())

    async def broadcast_quick_gainer(self, alert: Alert) -> int:
        return await self.broadcast_message(alert.to_message())

    async def broadcast_message(self, message: Dict[str, Any]) -> int:
        """Send to every authenticated client; returns how many got it."""
        data = json.dumps(message)
        targets = [c for c in self._clients.values() if c.authenticated]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send_raw(c, data) for c in targets))
        dead = [c for c, ok in zip(targets, results) if not ok]
        if dead:
            for c in dead:
                self._clients.pop(c.id, None)
                log.info("client %s dropped (send failed)", c.id)
            self._notify_count()
        return len(targets) - len(dead)

    # ── Connection handling ──

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        if not ws.can_prepare(request).ok:
            return web.json_response(self.status())
        await ws.prepare(request)

        client = Client(id=uuid.uuid4().hex[:8], ws=ws,
                        authenticated=not self._cfg.requires_auth,
                        remote=request.remote or "")
        self._clients[client.id] = client
        log.info("client %s connected from %s", client.id, client.remote)
        self._notify_count()

        try:
            if not client.authenticated and not await self._authenticate(client):
                return ws
            await self._send(client, self.current_snapshot().to_message())
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_text(client, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("client %s ws error: %s", client.id, ws.exception())
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("client %s session error", client.id)
        finally:
            if self._clients.pop(client.id, None) is not None:
                self._notify_count()
            log.info("client %s disconnected", client.id)
        return ws

    async def _authenticate(self, client: Client) -> bool:
        reason = "Invalid token"
        try:
            msg = await client.ws.receive(timeout=self._cfg.auth_timeout_s)
        except asyncio.TimeoutError:
            msg = None
            reason = "Timeout"

        if msg is not None and msg.type == WSMsgType.TEXT:
            try:
                cmd = decode_command(msg.data)
            except ProtocolError:
                cmd = None
            if isinstance(cmd, AuthCommand) and hmac.compare_digest(
                    cmd.token.encode(), self._cfg.ws_token.encode()):
                client.authenticated = True
                await self._send(client, {"type": "auth_success"})
                log.info("client %s authenticated", client.id)
                return True

        log.warning("client %s auth failed: %s", client.id, reason)
        await self._send(client, {"type": "auth_failed", "reason": reason})
        await client.ws.close(code=WSCloseCode.POLICY_VIOLATION,
                              message=b"Authentication failed")
        return False

    async def _handle_text(self, client: Client, raw: str) -> None:
        try:
            cmd = decode_command(raw)
        except UnknownCommandError as exc:
            log.info("client %s: %s", client.id, exc)
            return
        except ProtocolError as exc:
            log.warning("client %s sent bad frame: %s", client.id, exc)
            return

        if isinstance(cmd, AuthCommand):
            log.debug("client %s: auth ignored (already authenticated)", client.id)
            return

        route = self._routes.get(cmd.type)
        if route is None:
            log.info("client %s: no handler for %s", client.id, cmd.type.value)
            return
        if route.background:
            task = asyncio.create_task(self._run_route(route, client, cmd))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self._run_route(route, client, cmd)

    async def _run_route(self, route: _Route, client: Client, cmd: Command) -> None:
        try:
            await route.handler(client, cmd)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("command %s failed", cmd.type.value)
            await self._send(client, {"type": route.result_type, "success": False,
                                      "error": str(exc), "timestamp": iso_utc()})

    def _require_handlers(self) -> CommandHandlers:
        if self._handlers is None:
            raise RuntimeError("command handlers not available")
        return self._handlers

    # ── Command handlers ──

    async def _cmd_ping(self, client: Client, cmd: Command) -> None:
        await self._send(client, {"type": "pong", "timestamp": iso_utc()})

    async def _cmd_get_positions(self, client: Client, cmd: Command) -> None:
        await self._send(client, self.current_snapshot().to_message())

    async def _cmd_refresh(self, client: Client, cmd: Command) -> None:
        log.info("refresh requested by %s", client.id)
        self._require_handlers().request_refresh()
        await self._send(client, {"type": "refresh_started", "timestamp": iso_utc()})

    async def _cmd_restart(self, client: Client, cmd: Command) -> None:
        log.info("restart requested by %s", client.id)
        await self._send(client, {"type": "restart_started", "timestamp": iso_utc()})
        self._require_handlers().request_restart()

    async def _cmd_analyze(self, client: Client, cmd: AnalyzeCommand) -> None:
        await self._send(client, {"type": "analysis_started", "symbol": cmd.symbol})
        result = await self._require_handlers().analyze(cmd.symbol)
        await self.broadcast_message({**result, "type": "analysis_result"})

    async def _cmd_portfolio_analysis(self, client: Client, cmd: Command) -> None:
        await self._send(client, {"type": "analysis_started", "symbol": "PORTFOLIO"})
        result = await self._require_handlers().analyze_portfolio()
        await self.broadcast_message({**result, "type": "portfolio_analysis_result"})

    async def _cmd_click_tpsl(self, client: Client, cmd: PositionActionCommand) -> None:
        ok = await self._require_handlers().click_tpsl(cmd.trader, cmd.symbol, cmd.size)
        await self._send(client, {"type": "tpsl_click_result", "success": ok,
                                  "trader": cmd.trader, "symbol": cmd.symbol, "size": cmd.size})

    async def _cmd_close_position(self, client: Client, cmd: PositionActionCommand) -> None:
        ok = await self._require_handlers().close_position(cmd.trader, cmd.symbol, cmd.size)
        await self._send(client, {"type": "close_position_result", "success": ok,
                                  "trader": cmd.trader, "symbol": cmd.symbol, "size": cmd.size})

    async def _cmd_close_modal(self, client: Client, cmd: CloseModalCommand) -> None:
        ok = await self._require_handlers().close_modal(cmd.trader)
        await self._send(client, {"type": "close_modal_result", "success": ok,
                                  "trader": cmd.trader})

    async def _cmd_avg_pnl(self, client: Client, cmd: AvgPnLCommand) -> None:
        result = self._require_handlers().avg_pnl(cmd.unique_key)
        await self._send(client, {**result, "type": "avg_pnl_result"})

    async def _cmd_get_portfolio(self, client: Client, cmd: Command) -> None:
        data = self._require_handlers().portfolio()
        await self._send(client, {"type": "portfolio_data", "success": True, "data": data})

    async def _cmd_portfolio_update(self, client: Client, cmd: Command) -> None:
        handlers = self._require_handlers()
        reply: Dict[str, Any] = {"type": "portfolio_update_result", "action": cmd.type.value}
        if isinstance(cmd, InitialValueCommand):
            ok = handlers.update_initial_value(cmd.value, cmd.date)
        elif isinstance(cmd, GrowthUpdateCommand):
            ok = handlers.add_growth_update(cmd.value, cmd.notes, cmd.date)
        elif isinstance(cmd, CurrentValueCommand):
            ok = handlers.update_current_value(cmd.value)
        elif isinstance(cmd, AddWithdrawalCommand):
            new_id = handlers.add_withdrawal(cmd.amount, cmd.category,
                                             cmd.description, cmd.currency)
            ok = new_id is not None
            reply["id"] = new_id
        elif isinstance(cmd, UpdateWithdrawalCommand):
            ok = handlers.update_withdrawal(cmd.id, cmd.amount, cmd.category,
                                            cmd.description, cmd.currency)
            reply["id"] = cmd.id
        elif isinstance(cmd, DeleteWithdrawalCommand):
            ok = handlers.delete_withdrawal(cmd.id)
            reply["id"] = cmd.id
        else:
            raise ProtocolError(f"not a portfolio command: {cmd.type.value}")
        reply["success"] = ok
        await self._send(client, reply)
        if ok:
            # keep every open portfolio view in sync
            await self.broadcast_message({"type": "portfolio_data", "success": True,
                                          "data": handlers.portfolio()})

    async def _cmd_scrape_growth(self, client: Client, cmd: Command) -> None:
        value = await self._require_handlers().scrape_growth()
        await self._send(client, {"type": "growth_scraped", "success": value is not None,
                                  "value": value, "timestamp": iso_utc()})

    # ── Internals ──

    async def _send(self, client: Client, message: Dict[str, Any]) -> bool:
        return await self._send_raw(client, json.dumps(message))

    async def _send_raw(self, client: Client, data: str) -> bool:
        if client.ws.closed:
            return False
        try:
            await client.ws.send_str(data)
            return True
        except Exception as exc:
            log.debug("send to %s failed: %s", client.id, exc)
            return False

    def _notify_count(self) -> None:
        n = len(self._clients)
        for cb in self._count_cbs:
            try:
                cb(n)
            except Exception:
                log.exception("client count callback error")
