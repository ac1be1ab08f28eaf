"""Data models for the copy-trading monitor."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple


# Currency codes looked for inside the PnL cell, in priority order.
KNOWN_CURRENCIES = ("USDT", "USDC")

ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(ts: Optional[datetime] = None) -> str:
    return (ts or utc_now()).isoformat()


def to_decimal(text: str) -> Optional[Decimal]:
    """Parse a scraped numeric fragment such as ``-1.10`` or ``+4,80``.

    A lone comma is treated as the decimal separator. When both separators
    are present the comma is a thousands separator and is dropped.
    """
    cleaned = text.strip().replace("\u00a0", "").replace(" ", "")
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _money(value: Decimal) -> float:
    return float(round(value, 2))


# ──────────────────────────────────────────────────────────────
# Position (one scraped table row)
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class Position:
    """One open copy-trading position as shown in a trader's table."""
    trader: str
    symbol: str
    side: str = ""
    size: str = ""            # kept as displayed, e.g. "1,250 DOGE"
    margin: str = ""          # kept as displayed, e.g. "25.00 USDT"
    pnl_raw: str = ""
    pnl_value: Decimal = ZERO
    pnl_currency: str = "USDT"
    pnl_percentage: Decimal = ZERO

    @property
    def key(self) -> Tuple[str, str]:
        return (self.trader, self.symbol)

    @property
    def unique_key(self) -> str:
        """Stable id for one position; excludes PnL since it moves."""
        return f"{self.trader}_{self.symbol}_{self.side}_{self.size}"

    def parse_pnl(self, raw: str) -> None:
        """Fill the PnL fields from a cell like ``-1.10 USDT-4.80%``.

        Never raises. Fields that cannot be parsed keep their defaults, and
        text without a known currency code leaves every numeric field as is.
        """
        self.pnl_raw = raw or ""
        text = self.pnl_raw.strip()
        if not text:
            return

        currency = None
        idx = -1
        for code in KNOWN_CURRENCIES:
            idx = text.find(code)
            if idx >= 0:
                currency = code
                break
        if currency is None:
            return

        self.pnl_currency = currency
        value = to_decimal(text[:idx])
        if value is not None:
            self.pnl_value = value

        rest = text[idx + len(currency):].strip()
        if rest.endswith("%"):
            rest = rest[:-1]
        pct = to_decimal(rest)
        if pct is not None:
            self.pnl_percentage = pct

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trader": self.trader,
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "margin": self.margin,
            "pnlRaw": self.pnl_raw,
            "pnlValue": float(self.pnl_value),
            "pnlCurrency": self.pnl_currency,
            "pnlPercentage": float(self.pnl_percentage),
            "uniqueKey": self.unique_key,
        }


def dedupe_positions(positions: Iterable[Position]) -> list[Position]:
    """Keep the first position seen for each (trader, symbol) pair."""
    seen: set[Tuple[str, str]] = set()
    out: list[Position] = []
    for pos in positions:
        if pos.key in seen:
            continue
        seen.add(pos.key)
        out.append(pos)
    return out


# ──────────────────────────────────────────────────────────────
# Snapshot (one polling cycle)
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable result of one polling cycle."""
    positions: Tuple[Position, ...] = ()
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def from_positions(cls, positions: Sequence[Position],
                       timestamp: Optional[datetime] = None) -> "Snapshot":
        return cls(positions=tuple(positions), timestamp=timestamp or utc_now())

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def is_empty(self) -> bool:
        return not self.positions

    @property
    def total_pnl(self) -> Decimal:
        return sum((p.pnl_value for p in self.positions), ZERO)

    @property
    def total_pnl_percentage(self) -> Decimal:
        """Arithmetic mean of the per-position percentages."""
        if not self.positions:
            return ZERO
        total = sum((p.pnl_percentage for p in self.positions), ZERO)
        return total / len(self.positions)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "positions",
            "data": [p.to_dict() for p in self.positions],
            "count": len(self.positions),
            "totalPnL": _money(self.total_pnl),
            "totalPnLPercentage": _money(self.total_pnl_percentage),
            "timestamp": iso_utc(self.timestamp),
        }


EMPTY_SNAPSHOT = Snapshot(positions=(), timestamp=datetime.fromtimestamp(0, tz=timezone.utc))


# ──────────────────────────────────────────────────────────────
# Growth tracking
# ──────────────────────────────────────────────────────────────

class AlertKind(str, Enum):
    """Growth alert levels; EXPLOSION supersedes QUICK_GAINER."""
    QUICK_GAINER = "quick_gainer"
    EXPLOSION = "explosion"


@dataclass(slots=True)
class TrackedPosition:
    trader: str
    symbol: str
    first_seen: datetime
    initial_pnl_percentage: Decimal
    current_pnl_percentage: Decimal
    current_pnl: Decimal
    peak_pnl_percentage: Decimal
    quick_gainer_alert_sent: bool = False
    explosion_alert_sent: bool = False
    # last seen row details, reported when the position closes
    side: str = ""
    size: str = ""
    currency: str = "USDT"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.trader, self.symbol)

    @property
    def growth(self) -> Decimal:
        """Percentage points gained since the position was first seen."""
        return self.current_pnl_percentage - self.initial_pnl_percentage


@dataclass(slots=True)
class Alert:
    """Emitted once per threshold crossing of a tracked position."""
    trader: str
    symbol: str
    kind: AlertKind
    current_pnl_percentage: Decimal
    growth: Decimal
    pnl: Decimal
    message: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "quick_gainer",
            "alertType": self.kind.value,
            "trader": self.trader,
            "symbol": self.symbol,
            "pnl": _money(self.pnl),
            "pnlPercentage": _money(self.current_pnl_percentage),
            "growth": _money(self.growth),
            "message": self.message,
            "timestamp": iso_utc(self.timestamp),
        }


@dataclass(slots=True)
class PnLAlert:
    """Absolute profit/loss notification (``alert`` wire message)."""
    title: str
    message: str
    is_profit: bool
    timestamp: datetime = field(default_factory=utc_now)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "alert",
            "title": self.title,
            "message": self.message,
            "isProfit": self.is_profit,
            "timestamp": iso_utc(self.timestamp),
        }


def fmt_signed(value: Decimal) -> str:
    return f"{float(value):+.2f}"
