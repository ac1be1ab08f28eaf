"""Position tracker: turns a stream of snapshots into one-shot alerts.

Two independent state machines live here:

  PositionTracker
      Growth since first observation. A key crossing the quick-gainer
      threshold fires ``quick_gainer`` once; crossing the explosion
      threshold fires ``explosion`` once and also suppresses any later
      quick-gainer. A key that disappears is forgotten, so a reopened
      position starts fresh.

  PnLThresholdNotifier
      Absolute PnL in currency units. Profit >= profit threshold or
      loss < loss threshold fires once per (key, kind) and re-arms when
      the PnL moves back between the two thresholds.

Neither class does any I/O; both are driven from the snapshot callback.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from .models import (
    Alert, AlertKind, PnLAlert, Position, Snapshot, TrackedPosition,
    fmt_signed, utc_now,
)

log = logging.getLogger(__name__)

AlertCallback = Callable[[Alert], None]
ClosedCallback = Callable[[TrackedPosition], None]
PnLAlertCallback = Callable[[PnLAlert], None]

_Key = Tuple[str, str]


class PositionTracker:
    """Tracks per-(trader, symbol) growth and raises threshold alerts.

    Interface:
        tracker = PositionTracker(quick_gainer_threshold=10, explosion_threshold=20)
        tracker.on_alert(cb)      # cb(Alert)
        tracker.on_closed(cb)     # cb(TrackedPosition) when a key disappears
        tracker.update_positions(snapshot) -> list[Alert]
    """

    def __init__(self, quick_gainer_threshold: float = 10.0,
                 explosion_threshold: float = 20.0) -> None:
        self._gainer = Decimal(str(quick_gainer_threshold))
        self._explosion = Decimal(str(explosion_threshold))
        self._tracked: Dict[_Key, TrackedPosition] = {}
        self._alert_cbs: List[AlertCallback] = []
        self._closed_cbs: List[ClosedCallback] = []

    # ── Public API ──

    def on_alert(self, cb: AlertCallback) -> None:
        self._alert_cbs.append(cb)

    def on_closed(self, cb: ClosedCallback) -> None:
        self._closed_cbs.append(cb)

    @property
    def tracked(self) -> Dict[_Key, TrackedPosition]:
        return dict(self._tracked)

    def get(self, trader: str, symbol: str) -> Optional[TrackedPosition]:
        return self._tracked.get((trader, symbol))

    def __len__(self) -> int:
        return len(self._tracked)

    def clear(self) -> None:
        self._tracked.clear()

    def update_positions(self, snapshot: Snapshot) -> List[Alert]:
        """Advance the state machine by one snapshot; returns alerts raised."""
        present: Set[_Key] = {p.key for p in snapshot.positions}

        for key in [k for k in self._tracked if k not in present]:
            closed = self._tracked.pop(key)
            log.info("position closed: %s %s (last %s%%)",
                     closed.trader, closed.symbol,
                     fmt_signed(closed.current_pnl_percentage))
            self._fire(self._closed_cbs, closed)

        alerts: List[Alert] = []
        for pos in snapshot.positions:
            tracked = self._tracked.get(pos.key)
            if tracked is None:
                tracked = self._start_tracking(pos)
                alert = self._check_entry(tracked)
            else:
                self._refresh(tracked, pos)
                alert = self._check_growth(tracked)
            if alert is not None:
                alerts.append(alert)

        for alert in alerts:
            log.info("%s", alert.message)
            self._fire(self._alert_cbs, alert)
        return alerts

    # ── Internals ──

    def _start_tracking(self, pos: Position) -> TrackedPosition:
        tracked = TrackedPosition(
            trader=pos.trader,
            symbol=pos.symbol,
            first_seen=utc_now(),
            initial_pnl_percentage=pos.pnl_percentage,
            current_pnl_percentage=pos.pnl_percentage,
            current_pnl=pos.pnl_value,
            peak_pnl_percentage=pos.pnl_percentage,
            side=pos.side,
            size=pos.size,
            currency=pos.pnl_currency,
        )
        self._tracked[pos.key] = tracked
        return tracked

    @staticmethod
    def _refresh(tracked: TrackedPosition, pos: Position) -> None:
        tracked.current_pnl = pos.pnl_value
        tracked.current_pnl_percentage = pos.pnl_percentage
        if pos.pnl_percentage > tracked.peak_pnl_percentage:
            tracked.peak_pnl_percentage = pos.pnl_percentage
        tracked.side = pos.side
        tracked.size = pos.size
        tracked.currency = pos.pnl_currency

    def _check_entry(self, tracked: TrackedPosition) -> Optional[Alert]:
        """A position first seen already deep in profit counts its entry level."""
        pct = tracked.initial_pnl_percentage
        kind = self._cross(tracked, pct)
        if kind is None:
            return None
        if kind is AlertKind.EXPLOSION:
            msg = f"🚀 EXPLOSION! {tracked.symbol} already at {fmt_signed(pct)}%!"
        else:
            msg = f"🔥 Hot entry! {tracked.symbol} already at {fmt_signed(pct)}%!"
        return self._alert(tracked, kind, pct, msg)

    def _check_growth(self, tracked: TrackedPosition) -> Optional[Alert]:
        growth = tracked.growth
        kind = self._cross(tracked, growth)
        if kind is None:
            return None
        now = fmt_signed(tracked.current_pnl_percentage)
        if kind is AlertKind.EXPLOSION:
            msg = f"🚀 EXPLOSION! {tracked.symbol} grew {fmt_signed(growth)}% (now at {now}%)"
        else:
            msg = f"🔥 Growing! {tracked.symbol} grew {fmt_signed(growth)}% (now at {now}%)"
        return self._alert(tracked, kind, growth, msg)

    def _cross(self, tracked: TrackedPosition, value: Decimal) -> Optional[AlertKind]:
        """Flip the one-shot flags for ``value`` and return the kind crossed."""
        if value <= 0:
            return None
        if value >= self._explosion and not tracked.explosion_alert_sent:
            tracked.explosion_alert_sent = True
            tracked.quick_gainer_alert_sent = True
            return AlertKind.EXPLOSION
        if value >= self._gainer and not tracked.quick_gainer_alert_sent:
            tracked.quick_gainer_alert_sent = True
            return AlertKind.QUICK_GAINER
        return None

    @staticmethod
    def _alert(tracked: TrackedPosition, kind: AlertKind,
               growth: Decimal, message: str) -> Alert:
        return Alert(
            trader=tracked.trader,
            symbol=tracked.symbol,
            kind=kind,
            current_pnl_percentage=tracked.current_pnl_percentage,
            growth=growth,
            pnl=tracked.current_pnl,
            message=message,
        )

    @staticmethod
    def _fire(callbacks: list, payload: object) -> None:
        for cb in callbacks:
            try:
                cb(payload)
            except Exception:
                log.exception("tracker callback error")


class PnLThresholdNotifier:
    """Fires ``alert`` messages on absolute profit / loss thresholds."""

    def __init__(self, profit_threshold: float = 30.0,
                 loss_threshold: float = -100.0) -> None:
        self._profit = Decimal(str(profit_threshold))
        self._loss = Decimal(str(loss_threshold))
        # unique_key → kinds already notified ("profit" / "loss")
        self._notified: Dict[str, Set[str]] = {}
        self._callbacks: List[PnLAlertCallback] = []

    def on_alert(self, cb: PnLAlertCallback) -> None:
        self._callbacks.append(cb)

    def notified(self, unique_key: str) -> Set[str]:
        return set(self._notified.get(unique_key, ()))

    def update(self, snapshot: Snapshot) -> List[PnLAlert]:
        present = {p.unique_key for p in snapshot.positions}
        for key in [k for k in self._notified if k not in present]:
            del self._notified[key]

        alerts: List[PnLAlert] = []
        for pos in snapshot.positions:
            alert = self._check(pos)
            if alert is not None:
                alerts.append(alert)

        for alert in alerts:
            for cb in self._callbacks:
                try:
                    cb(alert)
                except Exception:
                    log.exception("pnl alert callback error")
        return alerts

    def _check(self, pos: Position) -> Optional[PnLAlert]:
        key = pos.unique_key
        sent = self._notified.setdefault(key, set())
        pnl = pos.pnl_value

        if pnl >= self._profit:
            kind, label, is_profit = "profit", "PROFIT", True
        elif pnl < self._loss:
            kind, label, is_profit = "loss", "LOSS", False
        else:
            sent.clear()
            return None

        if kind in sent:
            return None
        sent.add(kind)
        return PnLAlert(
            title=f"{pos.trader} - {pos.symbol}",
            message=(f"{label}: {fmt_signed(pnl)} {pos.pnl_currency} "
                     f"({fmt_signed(pos.pnl_percentage)}%)"),
            is_profit=is_profit,
        )
