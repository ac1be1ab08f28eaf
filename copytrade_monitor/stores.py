"""JSON-file stores: portfolio ledger and weekly closed-position ledger.

Both stores keep their whole state in memory and rewrite their file on
every mutation. Mutations on unknown ids return False instead of raising;
file errors are logged and leave the in-memory state intact.
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_dt(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            log.debug("bad timestamp %r", value)
    return default


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _write_json(path: Path, payload: Any) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)
        return True
    except OSError:
        log.exception("failed to write %s", path)
        return False


def _read_json(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        log.exception("failed to read %s", path)
        return None


# ──────────────────────────────────────────────────────────────
# Portfolio ledger
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class GrowthUpdate:
    id: str
    date: str
    value: float
    notes: str = ""


@dataclass(slots=True)
class Withdrawal:
    id: str
    date: str
    amount: float
    category: str = ""
    description: str = ""
    currency: str = "USDT"


@dataclass(slots=True)
class PortfolioData:
    initial_value: float = 0.0
    initial_date: Optional[str] = None
    current_value: float = 0.0
    growth_updates: List[GrowthUpdate] = field(default_factory=list)
    withdrawals: List[Withdrawal] = field(default_factory=list)

    @property
    def total_withdrawals(self) -> float:
        return sum(w.amount for w in self.withdrawals)

    @property
    def total_growth(self) -> float:
        if self.initial_value == 0:
            return 0.0
        return self.current_value - self.initial_value

    @property
    def total_growth_percent(self) -> float:
        if self.initial_value == 0:
            return 0.0
        return (self.current_value - self.initial_value) / self.initial_value * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initialValue": self.initial_value,
            "initialDate": self.initial_date,
            "currentValue": self.current_value,
            "growthUpdates": [asdict(g) for g in self.growth_updates],
            "withdrawals": [asdict(w) for w in self.withdrawals],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PortfolioData":
        growth = [
            GrowthUpdate(
                id=str(g.get("id") or _new_id()),
                date=str(g.get("date") or ""),
                value=float(g.get("value") or 0.0),
                notes=str(g.get("notes") or ""),
            )
            for g in raw.get("growthUpdates") or []
            if isinstance(g, dict)
        ]
        withdrawals = [
            Withdrawal(
                id=str(w.get("id") or _new_id()),
                date=str(w.get("date") or ""),
                amount=float(w.get("amount") or 0.0),
                category=str(w.get("category") or ""),
                description=str(w.get("description") or ""),
                currency=str(w.get("currency") or "USDT"),
            )
            for w in raw.get("withdrawals") or []
            if isinstance(w, dict)
        ]
        return cls(
            initial_value=float(raw.get("initialValue") or 0.0),
            initial_date=raw.get("initialDate"),
            current_value=float(raw.get("currentValue") or 0.0),
            growth_updates=growth,
            withdrawals=withdrawals,
        )


class PortfolioStore:
    """Portfolio value, growth updates and withdrawals in ``portfolio.json``."""

    FILE_NAME = "portfolio.json"

    def __init__(self, data_dir: str, clock: Clock = _local_now) -> None:
        self._path = Path(data_dir) / self.FILE_NAME
        self._clock = clock
        self._data = PortfolioData()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        raw = _read_json(self._path)
        if isinstance(raw, dict):
            try:
                self._data = PortfolioData.from_dict(raw)
            except (TypeError, ValueError):
                log.exception("corrupt portfolio file %s", self._path)
                self._data = PortfolioData()
            else:
                log.info("portfolio loaded (initial %.2f, current %.2f)",
                         self._data.initial_value, self._data.current_value)

    def save(self) -> bool:
        return _write_json(self._path, self._data.to_dict())

    def get_portfolio(self) -> PortfolioData:
        """Copy of the current state; callers may not mutate the store through it."""
        return PortfolioData.from_dict(self._data.to_dict())

    def summary(self) -> Dict[str, Any]:
        """``portfolio_data`` wire payload."""
        payload = self._data.to_dict()
        payload.update({
            "totalWithdrawals": round(self._data.total_withdrawals, 2),
            "totalGrowth": round(self._data.total_growth, 2),
            "totalGrowthPercent": round(self._data.total_growth_percent, 2),
        })
        return payload

    def update_initial_value(self, value: float, on: Optional[str] = None) -> bool:
        self._data.initial_value = float(value)
        self._data.initial_date = on or self._clock().date().isoformat()
        log.info("initial value set to %.2f (%s)", value, self._data.initial_date)
        return self.save()

    def update_current_value(self, value: float) -> bool:
        self._data.current_value = float(value)
        log.info("current value set to %.2f", value)
        return self.save()

    def add_growth_update(self, value: float, notes: str = "",
                          on: Optional[str] = None) -> bool:
        update = GrowthUpdate(
            id=_new_id(),
            date=on or self._clock().isoformat(timespec="seconds"),
            value=float(value),
            notes=notes,
        )
        self._data.growth_updates.insert(0, update)
        self._data.current_value = float(value)
        log.info("growth update %.2f (%s)", value, update.date)
        return self.save()

    def add_withdrawal(self, amount: float, category: str = "", description: str = "",
                       currency: str = "USDT") -> Optional[str]:
        withdrawal = Withdrawal(
            id=_new_id(),
            date=self._clock().isoformat(timespec="seconds"),
            amount=float(amount),
            category=category,
            description=description,
            currency=currency or "USDT",
        )
        self._data.withdrawals.insert(0, withdrawal)
        log.info("withdrawal %.2f %s (%s)", amount, withdrawal.currency, category)
        return withdrawal.id if self.save() else None

    def update_withdrawal(self, withdrawal_id: str, amount: Optional[float] = None,
                          category: Optional[str] = None,
                          description: Optional[str] = None,
                          currency: Optional[str] = None) -> bool:
        target = next((w for w in self._data.withdrawals if w.id == withdrawal_id), None)
        if target is None:
            log.warning("withdrawal not found: %s", withdrawal_id)
            return False
        if amount is not None:
            target.amount = float(amount)
        if category:
            target.category = category
        if description:
            target.description = description
        if currency:
            target.currency = currency
        return self.save()

    def delete_withdrawal(self, withdrawal_id: str) -> bool:
        before = len(self._data.withdrawals)
        self._data.withdrawals = [w for w in self._data.withdrawals if w.id != withdrawal_id]
        if len(self._data.withdrawals) == before:
            return False
        log.info("withdrawal deleted: %s", withdrawal_id)
        return self.save()

    def total_withdrawals(self) -> float:
        return self._data.total_withdrawals

    def total_growth(self) -> float:
        return self._data.total_growth

    def total_growth_percent(self) -> float:
        return self._data.total_growth_percent


# ──────────────────────────────────────────────────────────────
# Closed-position ledger (one file per ISO week)
# ──────────────────────────────────────────────────────────────

_WEEK_FILE = re.compile(r"^(\d{4})-W(\d{2})$")


@dataclass(slots=True)
class ClosedPositionRecord:
    trader: str
    symbol: str
    pnl: float
    pnl_percent: float = 0.0
    side: str = ""
    size: str = ""
    currency: str = "USDT"
    closed_at: Optional[datetime] = None
    reason: str = ""          # "closed", "manual", ...
    notes: str = ""
    was_edited: bool = False
    id: str = field(default_factory=_new_id)
    position_key: str = ""

    def __post_init__(self) -> None:
        if not self.position_key:
            self.position_key = f"{self.trader}_{self.symbol}_{self.side}_{self.size}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "positionKey": self.position_key,
            "trader": self.trader,
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
            "currency": self.currency,
            "closedAt": _iso(self.closed_at),
            "reason": self.reason,
            "notes": self.notes,
            "wasEdited": self.was_edited,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ClosedPositionRecord":
        return cls(
            id=str(raw.get("id") or _new_id()),
            position_key=str(raw.get("positionKey") or ""),
            trader=str(raw.get("trader") or ""),
            symbol=str(raw.get("symbol") or ""),
            side=str(raw.get("side") or ""),
            size=str(raw.get("size") or ""),
            pnl=float(raw.get("pnl") or 0.0),
            pnl_percent=float(raw.get("pnlPercent") or 0.0),
            currency=str(raw.get("currency") or "USDT"),
            closed_at=_parse_dt(raw.get("closedAt")),
            reason=str(raw.get("reason") or ""),
            notes=str(raw.get("notes") or ""),
            was_edited=bool(raw.get("wasEdited", False)),
        )


def week_name(year: int, week: int) -> str:
    return f"{year}-W{week:02d}"


def iso_week(ts: datetime | date) -> Tuple[int, int]:
    cal = ts.isocalendar()
    return cal[0], cal[1]


class ClosedPositionsStore:
    """Closed positions, most recent first, in ``closed_positions/<YYYY>-W<WW>.json``."""

    DIR_NAME = "closed_positions"

    def __init__(self, data_dir: str, clock: Clock = _local_now) -> None:
        self._dir = Path(data_dir) / self.DIR_NAME
        self._clock = clock
        self._year, self._week = iso_week(clock())
        self._records: List[ClosedPositionRecord] = []
        self._load_current()

    # ── Week files ──

    @property
    def current_week_name(self) -> str:
        return week_name(self._year, self._week)

    def _week_path(self, year: int, week: int) -> Path:
        return self._dir / f"{week_name(year, week)}.json"

    def _load_current(self) -> None:
        self._records = self.load_week(self._year, self._week)
        log.info("closed positions: %d records for %s",
                 len(self._records), self.current_week_name)

    def load_week(self, year: int, week: int) -> List[ClosedPositionRecord]:
        raw = _read_json(self._week_path(year, week))
        if not isinstance(raw, list):
            return []
        out: List[ClosedPositionRecord] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                out.append(ClosedPositionRecord.from_dict(item))
            except (TypeError, ValueError):
                log.warning("skipping bad record in %s", week_name(year, week))
        return out

    def save(self) -> bool:
        return _write_json(self._week_path(self._year, self._week),
                           [r.to_dict() for r in self._records])

    def check_rollover(self) -> bool:
        """Switch to a new week file when the ISO week changed."""
        year, week = iso_week(self._clock())
        if (year, week) == (self._year, self._week):
            return False
        self.save()
        self._year, self._week = year, week
        self._load_current()
        log.info("rolled over to week %s", self.current_week_name)
        return True

    def available_weeks(self) -> List[Tuple[int, int, str]]:
        """``(year, week, name)`` for each week file, newest first."""
        if not self._dir.is_dir():
            return []
        weeks: List[Tuple[int, int, str]] = []
        for path in self._dir.glob("*.json"):
            m = _WEEK_FILE.match(path.stem)
            if m:
                weeks.append((int(m.group(1)), int(m.group(2)), path.stem))
        weeks.sort(key=lambda w: (w[0], w[1]), reverse=True)
        return weeks

    # ── Mutations ──

    def add_record(self, record: ClosedPositionRecord) -> bool:
        self.check_rollover()
        if record.closed_at is None:
            record.closed_at = self._clock()
        self._records.insert(0, record)
        log.info("closed %s %s @ %+.2f%% (%+.2f %s)", record.trader, record.symbol,
                 record.pnl_percent, record.pnl, record.currency)
        return self.save()

    def update_pnl(self, record_id: str, new_pnl: float, notes: str = "") -> bool:
        record = self.get_by_id(record_id)
        if record is None:
            return False
        old = record.pnl
        record.pnl = float(new_pnl)
        record.was_edited = True
        if notes:
            record.notes = notes
        log.info("edited %s: %+.2f -> %+.2f", record.symbol, old, new_pnl)
        return self.save()

    def delete_record(self, record_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != record_id]
        if len(self._records) == before:
            return False
        return self.save()

    # ── Queries ──

    def get_by_id(self, record_id: str) -> Optional[ClosedPositionRecord]:
        return next((r for r in self._records if r.id == record_id), None)

    def current_week(self) -> List[ClosedPositionRecord]:
        self.check_rollover()
        return list(self._records)

    def today(self) -> List[ClosedPositionRecord]:
        self.check_rollover()
        today = self._clock().date()
        return [r for r in self._records
                if r.closed_at is not None and r.closed_at.date() == today]

    def current_week_pnl(self) -> float:
        return sum(r.pnl for r in self.current_week())

    def today_pnl(self) -> float:
        return sum(r.pnl for r in self.today())

    def all_time(self) -> Tuple[float, int]:
        """Total PnL and record count across every week file."""
        total, count = 0.0, 0
        current = (self._year, self._week)
        seen_current = False
        for year, week, _ in self.available_weeks():
            if (year, week) == current:
                records = self._records
                seen_current = True
            else:
                records = self.load_week(year, week)
            total += sum(r.pnl for r in records)
            count += len(records)
        if not seen_current:
            total += sum(r.pnl for r in self._records)
            count += len(self._records)
        return total, count

    def summary(self) -> str:
        today = self.today()
        week = self.current_week()
        all_pnl, all_count = self.all_time()
        return (f"Today: {sum(r.pnl for r in today):+.2f} USDT ({len(today)}) | "
                f"Week: {sum(r.pnl for r in week):+.2f} USDT ({len(week)}) | "
                f"All-time: {all_pnl:+.2f} USDT ({all_count})")
