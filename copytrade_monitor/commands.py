"""Inbound client commands: decoded once into typed values.

Every frame is a JSON object with a ``type`` field. ``decode_command``
validates the payload and returns one of the dataclasses below, or raises
``ProtocolError``. Dispatch on the result happens in the hub via an
explicit ``CommandType → handler`` table.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union


class ProtocolError(ValueError):
    """Malformed inbound frame; the connection stays open."""


class UnknownCommandError(ProtocolError):
    """Well-formed frame whose ``type`` is not recognised."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"unknown command type: {type_name!r}")
        self.type_name = type_name


class CommandType(str, Enum):
    AUTH = "auth"
    PING = "ping"
    GET_POSITIONS = "get_positions"
    REFRESH = "refresh"
    RESTART = "restart"
    ANALYZE = "analyze"
    PORTFOLIO_ANALYSIS = "portfolio_analysis"
    CLICK_TPSL = "click_tpsl"
    CLOSE_POSITION = "close_position"
    CLOSE_MODAL = "close_modal"
    GET_AVG_PNL = "get_avg_pnl"
    GET_PORTFOLIO = "get_portfolio"
    UPDATE_INITIAL_VALUE = "update_initial_value"
    ADD_GROWTH_UPDATE = "add_growth_update"
    UPDATE_CURRENT_VALUE = "update_current_value"
    ADD_WITHDRAWAL = "add_withdrawal"
    UPDATE_WITHDRAWAL = "update_withdrawal"
    DELETE_WITHDRAWAL = "delete_withdrawal"
    SCRAPE_GROWTH = "scrape_growth"


# ──────────────────────────────────────────────────────────────
# Command values
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Command:
    """Command with no payload (ping, refresh, get_portfolio, ...)."""
    type: CommandType


@dataclass(frozen=True, slots=True)
class AuthCommand(Command):
    token: str


@dataclass(frozen=True, slots=True)
class AnalyzeCommand(Command):
    symbol: str


@dataclass(frozen=True, slots=True)
class PositionActionCommand(Command):
    """click_tpsl / close_position; the row is matched by symbol and size."""
    trader: str
    symbol: str
    size: str


@dataclass(frozen=True, slots=True)
class CloseModalCommand(Command):
    trader: str


@dataclass(frozen=True, slots=True)
class AvgPnLCommand(Command):
    unique_key: str


@dataclass(frozen=True, slots=True)
class InitialValueCommand(Command):
    value: float
    date: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GrowthUpdateCommand(Command):
    value: float
    notes: str = ""
    date: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CurrentValueCommand(Command):
    value: float


@dataclass(frozen=True, slots=True)
class AddWithdrawalCommand(Command):
    amount: float
    category: str = ""
    description: str = ""
    currency: str = "USDT"


@dataclass(frozen=True, slots=True)
class UpdateWithdrawalCommand(Command):
    id: str
    amount: Optional[float] = None
    category: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DeleteWithdrawalCommand(Command):
    id: str


AnyCommand = Union[
    Command, AuthCommand, AnalyzeCommand, PositionActionCommand,
    CloseModalCommand, AvgPnLCommand, InitialValueCommand,
    GrowthUpdateCommand, CurrentValueCommand, AddWithdrawalCommand,
    UpdateWithdrawalCommand, DeleteWithdrawalCommand,
]


# ──────────────────────────────────────────────────────────────
# Field readers
# ──────────────────────────────────────────────────────────────

_MISSING = object()


def _field(obj: Dict[str, Any], name: str, *alts: str) -> Any:
    for key in (name, *alts):
        if key in obj and obj[key] is not None:
            return obj[key]
    return _MISSING


def _req_str(obj: Dict[str, Any], name: str, *alts: str) -> str:
    value = _field(obj, name, *alts)
    if value is _MISSING:
        raise ProtocolError(f"missing field {name!r}")
    if not isinstance(value, str):
        raise ProtocolError(f"field {name!r} must be a string")
    return value.strip()


def _opt_str(obj: Dict[str, Any], name: str, default: Optional[str] = None) -> Optional[str]:
    value = _field(obj, name)
    if value is _MISSING:
        return default
    if not isinstance(value, str):
        raise ProtocolError(f"field {name!r} must be a string")
    return value


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ProtocolError(f"field {name!r} must be a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            pass
    raise ProtocolError(f"field {name!r} must be a number")


def _req_num(obj: Dict[str, Any], name: str) -> float:
    value = _field(obj, name)
    if value is _MISSING:
        raise ProtocolError(f"missing field {name!r}")
    return _as_number(name, value)


def _opt_num(obj: Dict[str, Any], name: str) -> Optional[float]:
    value = _field(obj, name)
    if value is _MISSING:
        return None
    return _as_number(name, value)


def _req_id(obj: Dict[str, Any]) -> str:
    value = _field(obj, "id")
    if value is _MISSING or isinstance(value, bool):
        raise ProtocolError("missing field 'id'")
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError("field 'id' must be a non-empty string")
    return value.strip()


# ──────────────────────────────────────────────────────────────
# Decoder
# ──────────────────────────────────────────────────────────────

_Builder = Callable[[CommandType, Dict[str, Any]], Command]


def _bare(t: CommandType, obj: Dict[str, Any]) -> Command:
    return Command(t)


def _position_action(t: CommandType, obj: Dict[str, Any]) -> Command:
    return PositionActionCommand(
        t, _req_str(obj, "trader"), _req_str(obj, "symbol"),
        _opt_str(obj, "size", "") or "",
    )


_BUILDERS: Dict[CommandType, _Builder] = {
    CommandType.AUTH: lambda t, o: AuthCommand(t, _opt_str(o, "token", "") or ""),
    CommandType.PING: _bare,
    CommandType.GET_POSITIONS: _bare,
    CommandType.REFRESH: _bare,
    CommandType.RESTART: _bare,
    CommandType.ANALYZE: lambda t, o: AnalyzeCommand(t, _req_str(o, "symbol").upper()),
    CommandType.PORTFOLIO_ANALYSIS: _bare,
    CommandType.CLICK_TPSL: _position_action,
    CommandType.CLOSE_POSITION: _position_action,
    CommandType.CLOSE_MODAL: lambda t, o: CloseModalCommand(t, _req_str(o, "trader")),
    CommandType.GET_AVG_PNL: lambda t, o: AvgPnLCommand(t, _req_str(o, "uniqueKey", "unique_key")),
    CommandType.GET_PORTFOLIO: _bare,
    CommandType.UPDATE_INITIAL_VALUE: lambda t, o: InitialValueCommand(
        t, _req_num(o, "value"), _opt_str(o, "date")),
    CommandType.ADD_GROWTH_UPDATE: lambda t, o: GrowthUpdateCommand(
        t, _req_num(o, "value"), _opt_str(o, "notes", "") or "", _opt_str(o, "date")),
    CommandType.UPDATE_CURRENT_VALUE: lambda t, o: CurrentValueCommand(t, _req_num(o, "value")),
    CommandType.ADD_WITHDRAWAL: lambda t, o: AddWithdrawalCommand(
        t, _req_num(o, "amount"),
        _opt_str(o, "category", "") or "",
        _opt_str(o, "description", "") or "",
        _opt_str(o, "currency", "USDT") or "USDT"),
    CommandType.UPDATE_WITHDRAWAL: lambda t, o: UpdateWithdrawalCommand(
        t, _req_id(o), _opt_num(o, "amount"), _opt_str(o, "category"),
        _opt_str(o, "description"), _opt_str(o, "currency")),
    CommandType.DELETE_WITHDRAWAL: lambda t, o: DeleteWithdrawalCommand(t, _req_id(o)),
    CommandType.SCRAPE_GROWTH: _bare,
}


def decode_command(raw: Union[str, bytes]) -> Command:
    """Decode one text frame; raises ProtocolError on anything unusable."""
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("frame must be a JSON object")
    type_name = obj.get("type")
    if not isinstance(type_name, str) or not type_name:
        raise ProtocolError("missing 'type'")
    try:
        ctype = CommandType(type_name)
    except ValueError:
        raise UnknownCommandError(type_name) from None
    return _BUILDERS[ctype](ctype, obj)
