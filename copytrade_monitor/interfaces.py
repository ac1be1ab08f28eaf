"""Collaborator contracts consumed by the broadcast hub.

The hub only knows these protocols; ``run.MonitorApp`` provides the real
implementation and tests substitute fakes.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol


class CommandHandlers(Protocol):
    """Everything a remote client can ask the process to do."""

    # ── Position source control ──

    def request_refresh(self) -> None: ...

    def request_restart(self) -> None: ...

    async def click_tpsl(self, trader: str, symbol: str, size: str) -> bool: ...

    async def close_position(self, trader: str, symbol: str, size: str) -> bool: ...

    async def close_modal(self, trader: str) -> bool: ...

    async def scrape_growth(self) -> Optional[str]: ...

    # ── Analysis ──

    async def analyze(self, symbol: str) -> Dict[str, Any]: ...

    async def analyze_portfolio(self) -> Dict[str, Any]: ...

    # ── PnL history ──

    def avg_pnl(self, unique_key: str) -> Dict[str, Any]: ...

    # ── Portfolio ledger ──

    def portfolio(self) -> Dict[str, Any]: ...

    def update_initial_value(self, value: float, date: Optional[str]) -> bool: ...

    def add_growth_update(self, value: float, notes: str, date: Optional[str]) -> bool: ...

    def update_current_value(self, value: float) -> bool: ...

    def add_withdrawal(self, amount: float, category: str, description: str,
                       currency: str) -> Optional[str]: ...

    def update_withdrawal(self, withdrawal_id: str, amount: Optional[float],
                          category: Optional[str], description: Optional[str],
                          currency: Optional[str]) -> bool: ...

    def delete_withdrawal(self, withdrawal_id: str) -> bool: ...
