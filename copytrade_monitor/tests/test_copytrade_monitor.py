"""Tests for copytrade_monitor (pure components)."""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest

from copytrade_monitor.analysis import (
    OpenAIAnalysisService, build_portfolio_prompt, build_symbol_prompt,
    market_symbol, parse_klines, parse_response,
)
from copytrade_monitor.commands import (
    AddWithdrawalCommand, AnalyzeCommand, AuthCommand, AvgPnLCommand, Command,
    CommandType, PositionActionCommand, ProtocolError, UnknownCommandError,
    UpdateWithdrawalCommand, decode_command,
)
from copytrade_monitor.config import ENV_VARS, Config, parse_args
from copytrade_monitor.env import (
    DEFAULT_ENV_FILE, EnvVar, env_file_from_argv, load_env_file, read_env_file,
    read_overrides,
)
from copytrade_monitor.extraction import ExtractionEngine, parse_table_html
from copytrade_monitor.models import (
    AlertKind, Position, Snapshot, dedupe_positions, to_decimal,
)
from copytrade_monitor.pnl_history import PnLHistory
from copytrade_monitor.stores import (
    ClosedPositionRecord, ClosedPositionsStore, PortfolioStore,
)
from copytrade_monitor.tracker import PnLThresholdNotifier, PositionTracker


def _pos(symbol: str, pct: float, trader: str = "alice", pnl: str = "1.00",
         size: str = "100") -> Position:
    p = Position(trader=trader, symbol=symbol, size=size)
    p.pnl_percentage = Decimal(str(pct))
    p.pnl_value = Decimal(pnl)
    return p


def _snap(*positions: Position) -> Snapshot:
    return Snapshot.from_positions(list(positions))


def _row(symbol: str, size: str, margin: str, pnl: str, pct: str,
         n_cells: int = 10, css: str = "") -> str:
    cells = [
        f'<td aria-colindex="1"><div class="t-caption2">{symbol}</div><div>Perpetual</div></td>',
        f'<td aria-colindex="2"><div class="t-body3">{size}</div></td>',
        f'<td aria-colindex="3"><div class="t-body3">{margin}</div><div>Cross</div></td>',
        '<td>95000.0</td>', '<td>96000.0</td>', '<td>90000.0</td>', '<td>--</td>',
        f'<td aria-colindex="8"><div>{pnl}</div><div>{pct}</div></td>',
        '<td><svg viewBox="0 0 24 24"></svg></td>',
        '<td><span class="cursor-pointer">Close Position</span></td>',
    ]
    cls = f' class="{css}"' if css else ""
    return f'<tr role="row"{cls}>' + "".join(cells[:n_cells]) + "</tr>"


def _table(*rows: str) -> str:
    return ('<table><thead><tr><th>Symbol</th></tr></thead>'
            '<tbody class="bn-web-table-tbody">' + "".join(rows) + "</tbody></table>")


# ──────────────────────────────────────────────────────────────
# Position / PnL parsing
# ──────────────────────────────────────────────────────────────


class TestParsePnL:
    def test_negative(self) -> None:
        p = Position(trader="t", symbol="BTCUSDT")
        p.parse_pnl("-1.10 USDT-4.80%")
        assert p.pnl_value == Decimal("-1.10")
        assert p.pnl_currency == "USDT"
        assert p.pnl_percentage == Decimal("-4.80")

    def test_positive_with_sign(self) -> None:
        p = Position(trader="t", symbol="ETHUSDT")
        p.parse_pnl("+0.13 USDT+0.15%")
        assert p.pnl_value == Decimal("0.13")
        assert p.pnl_percentage == Decimal("0.15")

    def test_no_currency_is_noop(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("12.5 BTC 3%")
        assert p.pnl_value == 0
        assert p.pnl_percentage == 0
        assert p.pnl_currency == "USDT"
        assert p.pnl_raw == "12.5 BTC 3%"

    def test_usdc(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("2.00 USDC+1.00%")
        assert p.pnl_currency == "USDC"
        assert p.pnl_value == Decimal("2.00")

    def test_comma_decimal_separator(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("-1,10 USDT-4,80%")
        assert p.pnl_value == Decimal("-1.10")
        assert p.pnl_percentage == Decimal("-4.80")

    def test_thousands_separator(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("1,234.50 USDT+12.00%")
        assert p.pnl_value == Decimal("1234.50")

    def test_garbage_defaults_to_zero(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("abc USDT xyz%")
        assert p.pnl_value == 0
        assert p.pnl_percentage == 0
        assert p.pnl_currency == "USDT"

    def test_empty(self) -> None:
        p = Position(trader="t", symbol="X")
        p.parse_pnl("")
        assert p.pnl_value == 0

    def test_to_decimal(self) -> None:
        assert to_decimal(" -4.80 ") == Decimal("-4.80")
        assert to_decimal("") is None
        assert to_decimal("NaN") is None
        assert to_decimal("--") is None


class TestPosition:
    def test_unique_key(self) -> None:
        p = Position(trader="alice", symbol="BTCUSDT", side="", size="0.01 BTC")
        assert p.unique_key == "alice_BTCUSDT__0.01 BTC"

    def test_to_dict_wire_names(self) -> None:
        p = Position(trader="alice", symbol="BTCUSDT")
        p.parse_pnl("-1.10 USDT-4.80%")
        d = p.to_dict()
        assert d["pnlValue"] == pytest.approx(-1.10)
        assert d["pnlPercentage"] == pytest.approx(-4.80)
        assert d["pnlCurrency"] == "USDT"
        assert d["pnlRaw"] == "-1.10 USDT-4.80%"


class TestDedupe:
    def test_first_wins(self) -> None:
        a = _pos("BTCUSDT", 1.0, pnl="1.00")
        b = _pos("BTCUSDT", 9.0, pnl="9.00")
        c = _pos("ETHUSDT", 2.0)
        out = dedupe_positions([a, b, c])
        assert out == [a, c]
        assert out[0].pnl_value == Decimal("1.00")

    def test_same_symbol_different_traders_kept(self) -> None:
        a = _pos("BTCUSDT", 1.0, trader="alice")
        b = _pos("BTCUSDT", 1.0, trader="bob")
        assert len(dedupe_positions([a, b])) == 2


class TestSnapshot:
    def test_totals(self) -> None:
        snap = _snap(_pos("A", 4.0, pnl="1.10"), _pos("B", 2.0, pnl="-0.50"))
        assert snap.total_pnl == Decimal("0.60")
        assert snap.total_pnl_percentage == Decimal("3")

    def test_empty_totals(self) -> None:
        snap = _snap()
        assert snap.is_empty
        assert snap.total_pnl_percentage == 0

    def test_message_rounds_to_cents(self) -> None:
        snap = _snap(_pos("A", 1.0, pnl="1.006"), _pos("B", 2.0, pnl="2.001"))
        msg = snap.to_message()
        assert msg["type"] == "positions"
        assert msg["count"] == 2
        assert msg["totalPnL"] == pytest.approx(3.01)
        assert msg["totalPnLPercentage"] == pytest.approx(1.5)
        assert len(msg["data"]) == 2
        json.dumps(msg)

    def test_immutable(self) -> None:
        snap = _snap(_pos("A", 1.0))
        with pytest.raises(Exception):
            snap.positions = ()  # type: ignore[misc]


# ──────────────────────────────────────────────────────────────
# Extraction
# ──────────────────────────────────────────────────────────────


class FakeHandle:
    def __init__(self, html: str = "", ready: bool = True,
                 error: Exception | None = None) -> None:
        self.html = html
        self._ready = ready
        self.error = error
        self.extract_calls = 0

    async def ready(self) -> bool:
        if self.error is not None:
            raise self.error
        return self._ready

    async def extract_table(self) -> str:
        self.extract_calls += 1
        return self.html

    async def dispose(self) -> None:
        pass


class TestParseTable:
    def test_parses_rows(self) -> None:
        html = _table(
            _row("BTCUSDT", "0.010 BTC", "50.00 USDT", "-1.10 USDT", "-4.80%"),
            _row("ETHUSDT", "0.5 ETH", "20.00 USDT", "+0.13 USDT", "+0.15%"),
        )
        out = parse_table_html(html, "alice")
        assert [p.symbol for p in out] == ["BTCUSDT", "ETHUSDT"]
        btc = out[0]
        assert btc.trader == "alice"
        assert btc.size == "0.010 BTC"
        assert btc.margin == "50.00 USDT"
        assert btc.pnl_value == Decimal("-1.10")
        assert btc.pnl_percentage == Decimal("-4.80")
        assert btc.side == ""

    def test_skips_short_rows(self) -> None:
        html = _table(_row("BTCUSDT", "1", "1", "1.00 USDT", "1%", n_cells=7))
        assert parse_table_html(html, "alice") == []

    def test_skips_missing_symbol(self) -> None:
        html = _table(_row("", "1", "1", "1.00 USDT", "1%"))
        assert parse_table_html(html, "alice") == []

    def test_symbol_needs_caption_div(self) -> None:
        plain = _row("ETHUSDT", "1", "1", "1.00 USDT", "1%").replace(
            '<div class="t-caption2">ETHUSDT</div>', "ETHUSDT")
        html = _table(plain, _row("BTCUSDT", "1", "1", "1.00 USDT", "1%"))
        assert [p.symbol for p in parse_table_html(html, "a")] == ["BTCUSDT"]

    def test_skips_measure_row(self) -> None:
        html = _table(
            _row("XRPUSDT", "1", "1", "1.00 USDT", "1%", css="bn-web-table-measure-row"),
            _row("BTCUSDT", "1", "1", "1.00 USDT", "1%"),
        )
        assert [p.symbol for p in parse_table_html(html, "a")] == ["BTCUSDT"]

    def test_bad_pnl_does_not_drop_row(self) -> None:
        html = _table(_row("BTCUSDT", "1", "1", "--", ""))
        out = parse_table_html(html, "a")
        assert len(out) == 1
        assert out[0].pnl_value == 0

    def test_empty_html(self) -> None:
        assert parse_table_html("", "a") == []
        assert parse_table_html("<div>no table</div>", "a") == []


class TestExtractionEngine:
    def test_merges_entities_and_contains_failures(self) -> None:
        contexts = {
            "alice": FakeHandle(_table(_row("BTCUSDT", "1", "1", "1.00 USDT", "2%"))),
            "bob": FakeHandle(ready=False),
            "carol": FakeHandle(error=RuntimeError("page crashed")),
            "dave": FakeHandle(_table(_row("ETHUSDT", "1", "1", "3.00 USDT", "4%"))),
        }
        snap = asyncio.run(ExtractionEngine().extract(contexts))
        assert [(p.trader, p.symbol) for p in snap.positions] == [
            ("alice", "BTCUSDT"), ("dave", "ETHUSDT"),
        ]
        assert contexts["bob"].extract_calls == 0

    def test_duplicate_rows_first_wins(self) -> None:
        html = _table(
            _row("BTCUSDT", "1", "1", "1.00 USDT", "1%"),
            _row("BTCUSDT", "2", "1", "9.00 USDT", "9%"),
        )
        snap = asyncio.run(ExtractionEngine().extract({"alice": FakeHandle(html)}))
        assert len(snap) == 1
        assert snap.positions[0].pnl_value == Decimal("1.00")

    def test_duplicates_across_contexts_first_in_order_wins(self) -> None:
        def same_trader(html: str, trader: str) -> list[Position]:
            p = Position(trader="shared", symbol="BTCUSDT")
            p.parse_pnl(html)
            return [p]

        engine = ExtractionEngine(parser=same_trader)
        contexts = {"first": FakeHandle("1.00 USDT+1%"), "second": FakeHandle("2.00 USDT+2%")}
        snap = asyncio.run(engine.extract(contexts))
        assert len(snap) == 1
        assert snap.positions[0].pnl_value == Decimal("1.00")

    def test_parser_error_contained(self) -> None:
        def boom(html: str, trader: str) -> list[Position]:
            raise ValueError("bad markup")

        snap = asyncio.run(ExtractionEngine(parser=boom).extract({"a": FakeHandle("x")}))
        assert snap.is_empty

    def test_no_contexts(self) -> None:
        snap = asyncio.run(ExtractionEngine().extract({}))
        assert snap.is_empty


# ──────────────────────────────────────────────────────────────
# Position tracker
# ──────────────────────────────────────────────────────────────


class TestPositionTracker:
    def test_quick_gainer_fires_once(self) -> None:
        t = PositionTracker(10, 20)
        assert t.update_positions(_snap(_pos("BTCUSDT", 0))) == []
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 12)))
        assert len(alerts) == 1
        assert alerts[0].kind is AlertKind.QUICK_GAINER
        assert alerts[0].growth == Decimal("12")
        assert t.update_positions(_snap(_pos("BTCUSDT", 15))) == []

    def test_explosion_supersedes_gainer(self) -> None:
        t = PositionTracker(10, 20)
        t.update_positions(_snap(_pos("BTCUSDT", 0)))
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 25)))
        assert [a.kind for a in alerts] == [AlertKind.EXPLOSION]
        tracked = t.get("alice", "BTCUSDT")
        assert tracked is not None
        assert tracked.quick_gainer_alert_sent
        assert tracked.explosion_alert_sent
        assert t.update_positions(_snap(_pos("BTCUSDT", 40))) == []

    def test_gainer_then_explosion(self) -> None:
        t = PositionTracker(10, 20)
        t.update_positions(_snap(_pos("BTCUSDT", 0)))
        t.update_positions(_snap(_pos("BTCUSDT", 11)))
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 21)))
        assert [a.kind for a in alerts] == [AlertKind.EXPLOSION]

    def test_new_position_already_high(self) -> None:
        t = PositionTracker(10, 20)
        alerts = t.update_positions(_snap(_pos("SOLUSDT", 22)))
        assert len(alerts) == 1
        assert alerts[0].kind is AlertKind.EXPLOSION
        assert "already at +22.00%" in alerts[0].message

    def test_hot_entry_then_growth_explosion(self) -> None:
        t = PositionTracker(10, 20)
        alerts = t.update_positions(_snap(_pos("SOLUSDT", 12)))
        assert [a.kind for a in alerts] == [AlertKind.QUICK_GAINER]
        assert "Hot entry" in alerts[0].message
        alerts = t.update_positions(_snap(_pos("SOLUSDT", 33)))
        assert [a.kind for a in alerts] == [AlertKind.EXPLOSION]
        assert "grew +21.00%" in alerts[0].message

    def test_negative_growth_no_alert(self) -> None:
        t = PositionTracker(10, 20)
        t.update_positions(_snap(_pos("BTCUSDT", 5)))
        assert t.update_positions(_snap(_pos("BTCUSDT", -30))) == []

    def test_peak_tracking(self) -> None:
        t = PositionTracker(10, 20)
        t.update_positions(_snap(_pos("BTCUSDT", 1)))
        t.update_positions(_snap(_pos("BTCUSDT", 6)))
        t.update_positions(_snap(_pos("BTCUSDT", 3)))
        tracked = t.get("alice", "BTCUSDT")
        assert tracked is not None
        assert tracked.peak_pnl_percentage == Decimal("6")
        assert tracked.current_pnl_percentage == Decimal("3")
        assert tracked.growth == Decimal("2")

    def test_reopen_resets_state(self) -> None:
        t = PositionTracker(10, 20)
        closed = []
        t.on_closed(closed.append)
        t.update_positions(_snap(_pos("BTCUSDT", 0)))
        assert len(t.update_positions(_snap(_pos("BTCUSDT", 25)))) == 1
        t.update_positions(_snap(_pos("ETHUSDT", 0)))
        assert [c.symbol for c in closed] == ["BTCUSDT"]
        assert t.get("alice", "BTCUSDT") is None

        t.update_positions(_snap(_pos("BTCUSDT", 5), _pos("ETHUSDT", 0)))
        tracked = t.get("alice", "BTCUSDT")
        assert tracked is not None
        assert tracked.initial_pnl_percentage == Decimal("5")
        assert not tracked.quick_gainer_alert_sent
        assert not tracked.explosion_alert_sent
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 17), _pos("ETHUSDT", 0)))
        assert [a.kind for a in alerts] == [AlertKind.QUICK_GAINER]

    def test_keys_are_per_trader(self) -> None:
        t = PositionTracker(10, 20)
        t.update_positions(_snap(_pos("BTCUSDT", 0, trader="a"), _pos("BTCUSDT", 0, trader="b")))
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 12, trader="a"),
                                          _pos("BTCUSDT", 0, trader="b")))
        assert [(a.trader, a.kind) for a in alerts] == [("a", AlertKind.QUICK_GAINER)]

    def test_callbacks_and_errors(self) -> None:
        t = PositionTracker(10, 20)
        got = []

        def bad(_alert: object) -> None:
            raise RuntimeError("subscriber bug")

        t.on_alert(bad)
        t.on_alert(got.append)
        t.update_positions(_snap(_pos("BTCUSDT", 30)))
        assert len(got) == 1

    def test_alert_wire_message(self) -> None:
        t = PositionTracker(10, 20)
        alert = t.update_positions(_snap(_pos("BTCUSDT", 22, pnl="4.40")))[0]
        msg = alert.to_message()
        assert msg["type"] == "quick_gainer"
        assert msg["alertType"] == "explosion"
        assert msg["pnl"] == pytest.approx(4.40)
        assert msg["pnlPercentage"] == pytest.approx(22.0)
        for key in ("trader", "symbol", "growth", "message", "timestamp"):
            assert key in msg

    def test_custom_thresholds(self) -> None:
        t = PositionTracker(quick_gainer_threshold=3, explosion_threshold=5)
        t.update_positions(_snap(_pos("BTCUSDT", 0)))
        alerts = t.update_positions(_snap(_pos("BTCUSDT", 4)))
        assert [a.kind for a in alerts] == [AlertKind.QUICK_GAINER]


class TestPnLThresholdNotifier:
    def test_profit_fires_once_and_rearms(self) -> None:
        n = PnLThresholdNotifier(30, -100)
        first = n.update(_snap(_pos("BTCUSDT", 5, pnl="35")))
        assert len(first) == 1
        assert first[0].is_profit
        assert first[0].title == "alice - BTCUSDT"
        assert first[0].message.startswith("PROFIT: +35.00 USDT")
        assert n.update(_snap(_pos("BTCUSDT", 5, pnl="40"))) == []
        assert n.update(_snap(_pos("BTCUSDT", 5, pnl="10"))) == []
        assert len(n.update(_snap(_pos("BTCUSDT", 5, pnl="31")))) == 1

    def test_loss(self) -> None:
        n = PnLThresholdNotifier(30, -100)
        alerts = n.update(_snap(_pos("BTCUSDT", -4.8, pnl="-150")))
        assert len(alerts) == 1
        assert not alerts[0].is_profit
        assert alerts[0].message == "LOSS: -150.00 USDT (-4.80%)"
        msg = alerts[0].to_message()
        assert msg["type"] == "alert"
        assert msg["isProfit"] is False

    def test_loss_boundary_is_strict(self) -> None:
        n = PnLThresholdNotifier(30, -100)
        assert n.update(_snap(_pos("BTCUSDT", 0, pnl="-100"))) == []

    def test_between_thresholds(self) -> None:
        n = PnLThresholdNotifier(30, -100)
        assert n.update(_snap(_pos("BTCUSDT", 0, pnl="29.99"))) == []


# ──────────────────────────────────────────────────────────────
# PnL history
# ──────────────────────────────────────────────────────────────


class TestPnLHistory:
    def test_average(self) -> None:
        h = PnLHistory(window_s=3600)
        h.record(_snap(_pos("BTCUSDT", 1, pnl="1")), now=0.0)
        h.record(_snap(_pos("BTCUSDT", 3, pnl="3")), now=10.0)
        key = _pos("BTCUSDT", 0).unique_key
        res = h.average(key, now=20.0)
        assert res["success"] is True
        assert res["samples"] == 2
        assert res["avgPnL"] == pytest.approx(2.0)
        assert res["avgPnLPercent"] == pytest.approx(2.0)
        assert res["uniqueKey"] == key
        assert res["windowSeconds"] == 3600

    def test_window_prunes(self) -> None:
        h = PnLHistory(window_s=60)
        h.record(_snap(_pos("BTCUSDT", 1, pnl="1")), now=0.0)
        h.record(_snap(_pos("BTCUSDT", 5, pnl="5")), now=100.0)
        key = _pos("BTCUSDT", 0).unique_key
        res = h.average(key, now=110.0)
        assert res["samples"] == 1
        assert res["avgPnL"] == pytest.approx(5.0)

    def test_unknown_key(self) -> None:
        res = PnLHistory().average("nobody_X__1")
        assert res["success"] is False
        assert res["samples"] == 0


# ──────────────────────────────────────────────────────────────
# Command decoding
# ──────────────────────────────────────────────────────────────


class TestDecodeCommand:
    def test_bare(self) -> None:
        assert decode_command('{"type": "ping"}') == Command(CommandType.PING)

    def test_auth(self) -> None:
        cmd = decode_command('{"type": "auth", "token": "s3cret"}')
        assert isinstance(cmd, AuthCommand)
        assert cmd.token == "s3cret"

    def test_analyze_upper(self) -> None:
        cmd = decode_command('{"type": "analyze", "symbol": "btcusdt"}')
        assert cmd == AnalyzeCommand(CommandType.ANALYZE, "BTCUSDT")

    def test_position_action(self) -> None:
        cmd = decode_command(json.dumps({"type": "close_position", "trader": "alice",
                                         "symbol": "BTCUSDT", "size": "0.01 BTC"}))
        assert isinstance(cmd, PositionActionCommand)
        assert cmd.type is CommandType.CLOSE_POSITION
        assert (cmd.trader, cmd.symbol, cmd.size) == ("alice", "BTCUSDT", "0.01 BTC")

    def test_avg_pnl_key(self) -> None:
        cmd = decode_command('{"type": "get_avg_pnl", "uniqueKey": "a_B__1"}')
        assert isinstance(cmd, AvgPnLCommand)
        assert cmd.unique_key == "a_B__1"

    def test_numbers_as_strings(self) -> None:
        cmd = decode_command('{"type": "add_withdrawal", "amount": "12,5", "category": "fees"}')
        assert isinstance(cmd, AddWithdrawalCommand)
        assert cmd.amount == pytest.approx(12.5)
        assert cmd.currency == "USDT"

    def test_update_withdrawal_optional_fields(self) -> None:
        cmd = decode_command('{"type": "update_withdrawal", "id": "w1", "amount": 3}')
        assert isinstance(cmd, UpdateWithdrawalCommand)
        assert cmd.amount == 3.0
        assert cmd.category is None

    def test_malformed_json(self) -> None:
        with pytest.raises(ProtocolError):
            decode_command("{not json")

    def test_not_an_object(self) -> None:
        with pytest.raises(ProtocolError):
            decode_command("[1, 2]")

    def test_missing_type(self) -> None:
        with pytest.raises(ProtocolError):
            decode_command('{"symbol": "BTC"}')

    def test_unknown_type(self) -> None:
        with pytest.raises(UnknownCommandError) as exc:
            decode_command('{"type": "launch_rockets"}')
        assert exc.value.type_name == "launch_rockets"

    def test_missing_required_field(self) -> None:
        with pytest.raises(ProtocolError):
            decode_command('{"type": "click_tpsl", "symbol": "BTCUSDT"}')

    def test_bool_is_not_a_number(self) -> None:
        with pytest.raises(ProtocolError):
            decode_command('{"type": "update_current_value", "value": true}')


# ──────────────────────────────────────────────────────────────
# Stores
# ──────────────────────────────────────────────────────────────


class TestPortfolioStore:
    def test_growth_update_sets_current(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            s = PortfolioStore(d)
            assert s.update_initial_value(1000.0, "2025-12-06")
            assert s.add_growth_update(1100.0, "week 1")
            assert s.add_growth_update(1200.0, "week 2")
            p = s.get_portfolio()
            assert p.current_value == 1200.0
            assert [g.value for g in p.growth_updates] == [1200.0, 1100.0]
            assert s.total_growth() == pytest.approx(200.0)
            assert s.total_growth_percent() == pytest.approx(20.0)

    def test_zero_initial_value(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            s = PortfolioStore(d)
            s.update_current_value(500.0)
            assert s.total_growth() == 0.0
            assert s.total_growth_percent() == 0.0

    def test_withdrawals(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            s = PortfolioStore(d)
            wid = s.add_withdrawal(50.0, "fees", "exchange fee")
            assert wid is not None
            s.add_withdrawal(25.0, "voucher", "food", "USDC")
            assert s.total_withdrawals() == pytest.approx(75.0)
            assert s.update_withdrawal(wid, amount=60.0, description="")
            w = next(w for w in s.get_portfolio().withdrawals if w.id == wid)
            assert w.amount == 60.0
            assert w.description == "exchange fee"
            assert not s.update_withdrawal("missing", amount=1.0)
            assert s.delete_withdrawal(wid)
            assert not s.delete_withdrawal(wid)
            assert s.total_withdrawals() == pytest.approx(25.0)

    def test_persists(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            s = PortfolioStore(d)
            s.update_initial_value(1000.0, "2025-12-06")
            s.add_withdrawal(10.0, "x", "y")
            again = PortfolioStore(d)
            p = again.get_portfolio()
            assert p.initial_value == 1000.0
            assert p.initial_date == "2025-12-06"
            assert len(p.withdrawals) == 1
            raw = json.loads((Path(d) / "portfolio.json").read_text())
            assert raw["initialValue"] == 1000.0

    def test_summary_payload(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            s = PortfolioStore(d)
            s.update_initial_value(200.0)
            s.update_current_value(250.0)
            data = s.summary()
            assert data["totalGrowthPercent"] == pytest.approx(25.0)
            assert data["totalWithdrawals"] == 0.0

    def test_corrupt_file_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            (Path(d) / "portfolio.json").write_text("{broken", encoding="utf-8")
            s = PortfolioStore(d)
            assert s.get_portfolio().initial_value == 0.0


class TestClosedPositionsStore:
    def _store(self, d: str, now: list) -> ClosedPositionsStore:
        return ClosedPositionsStore(d, clock=lambda: now[0])

    def test_add_and_week_file(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            now = [datetime(2025, 12, 17, 10, 0, tzinfo=timezone.utc)]
            s = self._store(d, now)
            assert s.current_week_name == "2025-W51"
            s.add_record(ClosedPositionRecord(trader="a", symbol="BTCUSDT", pnl=5.0,
                                              pnl_percent=10.0, reason="closed"))
            s.add_record(ClosedPositionRecord(trader="a", symbol="ETHUSDT", pnl=-2.0))
            assert [r.symbol for r in s.current_week()] == ["ETHUSDT", "BTCUSDT"]
            path = Path(d) / "closed_positions" / "2025-W51.json"
            assert path.is_file()
            assert len(json.loads(path.read_text())) == 2
            assert s.current_week_pnl() == pytest.approx(3.0)
            assert s.today_pnl() == pytest.approx(3.0)

    def test_update_and_delete(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            now = [datetime(2025, 12, 17, 10, 0, tzinfo=timezone.utc)]
            s = self._store(d, now)
            rec = ClosedPositionRecord(trader="a", symbol="BTCUSDT", pnl=5.0)
            s.add_record(rec)
            assert rec.position_key == "a_BTCUSDT__"
            assert s.update_pnl(rec.id, 7.5, "fees adjusted")
            got = s.get_by_id(rec.id)
            assert got is not None and got.was_edited and got.pnl == 7.5
            assert got.notes == "fees adjusted"
            assert not s.update_pnl("missing", 1.0)
            assert s.delete_record(rec.id)
            assert not s.delete_record(rec.id)

    def test_today_filter(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            now = [datetime(2025, 12, 17, 10, 0, tzinfo=timezone.utc)]
            s = self._store(d, now)
            s.add_record(ClosedPositionRecord(
                trader="a", symbol="OLD", pnl=1.0,
                closed_at=datetime(2025, 12, 15, 9, 0, tzinfo=timezone.utc)))
            s.add_record(ClosedPositionRecord(trader="a", symbol="NEW", pnl=2.0))
            assert [r.symbol for r in s.today()] == ["NEW"]

    def test_rollover_and_all_time(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            now = [datetime(2025, 12, 17, 10, 0, tzinfo=timezone.utc)]
            s = self._store(d, now)
            s.add_record(ClosedPositionRecord(trader="a", symbol="BTCUSDT", pnl=5.0))
            now[0] = datetime(2025, 12, 24, 10, 0, tzinfo=timezone.utc)
            assert s.current_week() == []
            assert s.current_week_name == "2025-W52"
            s.add_record(ClosedPositionRecord(trader="a", symbol="ETHUSDT", pnl=-1.0))
            weeks = [w[2] for w in s.available_weeks()]
            assert weeks == ["2025-W52", "2025-W51"]
            total, count = s.all_time()
            assert total == pytest.approx(4.0)
            assert count == 2
            assert s.summary() == ("Today: -1.00 USDT (1) | Week: -1.00 USDT (1) | "
                                   "All-time: +4.00 USDT (2)")

    def test_reload_from_disk(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            now = [datetime(2025, 12, 17, 10, 0, tzinfo=timezone.utc)]
            self._store(d, now).add_record(
                ClosedPositionRecord(trader="a", symbol="BTCUSDT", pnl=5.0, side="LONG"))
            again = self._store(d, now)
            recs = again.current_week()
            assert len(recs) == 1
            assert recs[0].side == "LONG"
            assert recs[0].closed_at is not None


# ──────────────────────────────────────────────────────────────
# Config / env
# ──────────────────────────────────────────────────────────────


class TestConfig:
    def test_defaults(self) -> None:
        cfg = Config()
        assert cfg.ws_port == 8765
        assert cfg.auth_timeout_s == 5.0
        assert cfg.poll_interval_s == 1.0
        assert cfg.quick_gainer_threshold == 10.0
        assert cfg.explosion_threshold == 20.0
        assert not cfg.requires_auth

    def test_parse_args(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            env_file = os.path.join(d, "none.env")
            cfg = parse_args(["--env-file", env_file, "--port", "9000",
                              "--token", "abc", "--log-level", "debug",
                              "--explosion-threshold", "30"])
        assert cfg.ws_port == 9000
        assert cfg.ws_token == "abc"
        assert cfg.requires_auth
        assert cfg.log_level == "DEBUG"
        assert cfg.explosion_threshold == 30.0

    @patch.dict(os.environ, {"COPYTRADE_WS_PORT": "7000", "COPYTRADE_QUICK_GAINER": "5"})
    def test_env_lowest_priority(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            env_file = os.path.join(d, "none.env")
            cfg = parse_args(["--env-file", env_file])
            assert cfg.ws_port == 7000
            assert cfg.quick_gainer_threshold == 5.0
            cfg = parse_args(["--env-file", env_file, "--port", "9100"])
            assert cfg.ws_port == 9100

    @patch.dict(os.environ, {}, clear=False)
    def test_env_file_loaded(self) -> None:
        os.environ.pop("COPYTRADE_WS_TOKEN", None)
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, ".env.test")
            with open(path, "w", encoding="utf-8") as f:
                f.write("# comment\nexport COPYTRADE_WS_TOKEN='fromfile'\nBROKEN LINE\n")
            cfg = parse_args(["--env-file", path])
        assert cfg.ws_token == "fromfile"

    def test_thresholds_must_be_ordered(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            env_file = os.path.join(d, "none.env")
            with pytest.raises(SystemExit):
                parse_args(["--env-file", env_file, "--quick-gainer-threshold", "30",
                            "--explosion-threshold", "20"])

    def test_read_env_file(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, ".env")
            with open(path, "w", encoding="utf-8") as f:
                f.write('A=1\nB="two # kept"\n=novalue\nexport C = three  # note\n')
            assert read_env_file(path) == {"A": "1", "B": "two # kept", "C": "three"}
            assert read_env_file(os.path.join(d, "missing")) == {}

    @patch.dict(os.environ, {"COPYTRADE_ALREADY": "env"})
    def test_load_env_file_keeps_exported_values(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, ".env")
            with open(path, "w", encoding="utf-8") as f:
                f.write("COPYTRADE_ALREADY=file\nCOPYTRADE_FRESH_XYZ=file\n")
            try:
                assert load_env_file(path) == ["COPYTRADE_FRESH_XYZ"]
                assert os.environ["COPYTRADE_ALREADY"] == "env"
                assert os.environ["COPYTRADE_FRESH_XYZ"] == "file"
            finally:
                os.environ.pop("COPYTRADE_FRESH_XYZ", None)

    def test_env_file_from_argv(self) -> None:
        with patch.dict(os.environ, {"ENV_FILE": "from-env.local"}):
            assert env_file_from_argv(["--port", "1"]) == "from-env.local"
            assert env_file_from_argv(["--env-file", "cli.local"]) == "cli.local"
        with patch.dict(os.environ, {}, clear=True):
            assert env_file_from_argv([]) == DEFAULT_ENV_FILE

    def test_read_overrides_typed(self) -> None:
        table = (
            EnvVar("X_FLAG", "headless", bool),
            EnvVar("X_PORT", "ws_port", int),
            EnvVar("X_BLANK", "ws_host"),
            EnvVar("X_UNSET", "data_dir"),
        )
        env = {"X_FLAG": "yes", "X_PORT": "9001", "X_BLANK": "   "}
        assert read_overrides(table, env) == {"headless": True, "ws_port": 9001}

    def test_unparsable_value_keeps_default(self) -> None:
        cfg = Config.from_env({"COPYTRADE_WS_PORT": "eighty", "COPYTRADE_HEADLESS": "maybe",
                               "COPYTRADE_POLL_INTERVAL": "2.5", "COPYTRADE_LOG_LEVEL": "warning"})
        assert cfg.ws_port == 8765
        assert cfg.headless is False
        assert cfg.poll_interval_s == 2.5
        assert cfg.log_level == "WARNING"

    def test_every_env_var_names_a_config_field(self) -> None:
        fields = set(Config.__dataclass_fields__)
        assert all(var.field in fields for var in ENV_VARS)
        assert len({var.name for var in ENV_VARS}) == len(ENV_VARS)


# ──────────────────────────────────────────────────────────────
# Analysis
# ──────────────────────────────────────────────────────────────


class TestAnalysis:
    def test_market_symbol(self) -> None:
        assert market_symbol("BTCUSDT Perpetual") == "BTCUSDT"
        assert market_symbol("1000pepeusdt") == "1000PEPEUSDT"
        assert market_symbol("--") == ""

    def test_parse_klines(self) -> None:
        rows = [[0, "1.0", "2.0", "0.5", "1.5", "100"], ["bad"], [0, "x", "1", "1", "1"]]
        klines = parse_klines(rows)
        assert len(klines) == 1
        assert klines[0].close == 1.5
        assert parse_klines({"code": -1121}) == []

    def test_symbol_prompt(self) -> None:
        klines = parse_klines([[0, "100", "110", "90", "100"], [0, "100", "130", "95", "120"]])
        prompt = build_symbol_prompt("BTCUSDT", "LONG", 12.5, klines)
        assert prompt.startswith("BTCUSDT LONG position at +12.50% PnL")
        assert "7d: +20.0% | High: 130.00 | Low: 90.00 | Now: 120.00" in prompt
        assert "RECOMMENDATION: HOLD or CLOSE" in prompt

    def test_portfolio_prompt(self) -> None:
        prompt = build_portfolio_prompt([_pos("BTCUSDT", 3, pnl="1.5")])
        assert "Open copy-trading positions (1)" in prompt
        assert "BTCUSDT" in prompt

    def test_parse_response(self) -> None:
        text = "RECOMMENDATION: CLOSE\nCONFIDENCE: 75%\nSUMMARY: momentum fading near resistance"
        res = parse_response("BTCUSDT", text)
        assert res.recommendation == "CLOSE"
        assert res.confidence == 75
        assert res.summary == "momentum fading near resistance"
        assert res.to_message()["success"] is True

    def test_parse_response_garbage(self) -> None:
        res = parse_response("BTCUSDT", "I cannot help with that")
        assert res.recommendation == "UNKNOWN"
        assert res.confidence == 0

    def test_no_api_key(self) -> None:
        svc = OpenAIAnalysisService(api_key="")
        res = asyncio.run(svc.analyze_symbol("BTCUSDT"))
        assert res.recommendation == "NO_API_KEY"
        assert res.to_message()["success"] is False
        res = asyncio.run(svc.analyze_portfolio([_pos("BTCUSDT", 1)]))
        assert res.recommendation == "NO_API_KEY"
