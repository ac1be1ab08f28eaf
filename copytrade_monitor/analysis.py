"""LLM-backed advisory for one symbol or the whole open book.

Fetches 4h klines from the public Binance REST endpoint, builds a compact
prompt, and asks the OpenAI chat completions endpoint for a HOLD/CLOSE call.
The service never raises to its caller: a missing key yields
``NO_API_KEY`` and any failure yields ``ERROR``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from .config import BINANCE_KLINES_URL, OPENAI_CHAT_URL
from .models import Position

log = logging.getLogger(__name__)

KLINE_INTERVAL = "4h"
KLINE_LIMIT = 42          # 7 days of 4h bars
SYSTEM_PROMPT = "Crypto analyst. Be extremely brief."
MAX_TOKENS = 100
PORTFOLIO_MAX_TOKENS = 400
TEMPERATURE = 0.3

_HEADERS = {"User-Agent": "Mozilla/5.0 (copytrade-monitor)"}
_SYMBOL_RE = re.compile(r"[A-Z0-9]+")


@dataclass(slots=True)
class Kline:
    open: float
    high: float
    low: float
    close: float


@dataclass(slots=True)
class AnalysisResult:
    symbol: str
    recommendation: str = "UNKNOWN"
    confidence: int = 0
    summary: str = ""
    raw: str = ""

    def to_message(self, msg_type: str = "analysis_result") -> Dict[str, Any]:
        return {
            "type": msg_type,
            "symbol": self.symbol,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "summary": self.summary,
            "raw": self.raw,
            "success": self.recommendation not in ("ERROR", "NO_API_KEY"),
        }


class AnalysisService(Protocol):
    async def analyze_symbol(self, symbol: str,
                             position: Optional[Position] = None) -> AnalysisResult: ...

    async def analyze_portfolio(self, positions: Sequence[Position]) -> AnalysisResult: ...


# ──────────────────────────────────────────────────────────────
# Prompt building / response parsing (pure)
# ──────────────────────────────────────────────────────────────

def market_symbol(symbol: str) -> str:
    """``"BTCUSDT Perpetual"`` → ``"BTCUSDT"``."""
    m = _SYMBOL_RE.search(symbol.upper())
    return m.group(0) if m else ""


def parse_klines(rows: Any) -> List[Kline]:
    out: List[Kline] = []
    if not isinstance(rows, list):
        return out
    for row in rows:
        try:
            out.append(Kline(float(row[1]), float(row[2]), float(row[3]), float(row[4])))
        except (TypeError, ValueError, IndexError):
            continue
    return out


def build_symbol_prompt(symbol: str, side: str, pnl_pct: float,
                        klines: Sequence[Kline]) -> str:
    first = klines[0].close if klines else 0.0
    last = klines[-1].close if klines else 0.0
    change = (last - first) / first * 100.0 if first else 0.0
    high = max((k.high for k in klines), default=0.0)
    low = min((k.low for k in klines), default=0.0)
    return (
        f"{symbol} {side or 'LONG'} position at {pnl_pct:+.2f}% PnL\n"
        f"7d: {change:+.1f}% | High: {high:.2f} | Low: {low:.2f} | Now: {last:.2f}\n"
        "\n"
        "Reply ONLY in this format (max 15 words for summary):\n"
        "RECOMMENDATION: HOLD or CLOSE\n"
        "CONFIDENCE: [number]%\n"
        "SUMMARY: [brief reason]"
    )


def build_portfolio_prompt(positions: Sequence[Position]) -> str:
    lines = [
        f"{p.symbol} {p.side or '-'} {float(p.pnl_percentage):+.2f}% "
        f"({float(p.pnl_value):+.2f} {p.pnl_currency}) via {p.trader}"
        for p in positions
    ]
    return (
        f"Open copy-trading positions ({len(positions)}):\n"
        + "\n".join(lines)
        + "\n\nReply ONLY in this format:\n"
        "RECOMMENDATION: HOLD or REDUCE\n"
        "CONFIDENCE: [number]%\n"
        "SUMMARY: [one line per symbol worth closing, then overall risk]"
    )


def parse_response(symbol: str, text: str) -> AnalysisResult:
    result = AnalysisResult(symbol=symbol, raw=text)
    for line in text.splitlines():
        head, sep, value = line.partition(":")
        if not sep:
            continue
        key = head.strip().upper()
        value = value.strip()
        if key == "RECOMMENDATION" and value:
            result.recommendation = value.split()[0].upper().strip(".*")
        elif key == "CONFIDENCE":
            m = re.search(r"\d+", value)
            if m:
                result.confidence = max(0, min(100, int(m.group(0))))
    idx = text.find("SUMMARY:")
    if idx >= 0:
        result.summary = text[idx + len("SUMMARY:"):].strip()
    return result


# ──────────────────────────────────────────────────────────────
# OpenAI-backed service
# ──────────────────────────────────────────────────────────────

class OpenAIAnalysisService:
    """AnalysisService over Binance klines + OpenAI chat completions."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini",
                 timeout_s: float = 30.0,
                 klines_url: str = BINANCE_KLINES_URL,
                 chat_url: str = OPENAI_CHAT_URL) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._klines_url = klines_url
        self._chat_url = chat_url

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def analyze_symbol(self, symbol: str,
                             position: Optional[Position] = None) -> AnalysisResult:
        if not self._api_key:
            return AnalysisResult(symbol=symbol, recommendation="NO_API_KEY",
                                  summary="OpenAI API key not configured")
        try:
            async with aiohttp.ClientSession(headers=_HEADERS, timeout=self._timeout) as session:
                klines = await self._fetch_klines(session, market_symbol(symbol))
                if not klines:
                    return AnalysisResult(symbol=symbol, recommendation="ERROR",
                                          summary=f"no market data for {symbol}")
                side = position.side if position else ""
                pct = float(position.pnl_percentage) if position else 0.0
                prompt = build_symbol_prompt(symbol, side, pct, klines)
                text = await self._chat(session, prompt, MAX_TOKENS)
            return parse_response(symbol, text)
        except Exception as exc:
            log.warning("analysis failed for %s: %s", symbol, exc)
            return AnalysisResult(symbol=symbol, recommendation="ERROR", summary=str(exc))

    async def analyze_portfolio(self, positions: Sequence[Position]) -> AnalysisResult:
        if not self._api_key:
            return AnalysisResult(symbol="PORTFOLIO", recommendation="NO_API_KEY",
                                  summary="OpenAI API key not configured")
        if not positions:
            return AnalysisResult(symbol="PORTFOLIO", recommendation="HOLD",
                                  summary="no open positions")
        try:
            async with aiohttp.ClientSession(headers=_HEADERS, timeout=self._timeout) as session:
                text = await self._chat(session, build_portfolio_prompt(positions),
                                        PORTFOLIO_MAX_TOKENS)
            return parse_response("PORTFOLIO", text)
        except Exception as exc:
            log.warning("portfolio analysis failed: %s", exc)
            return AnalysisResult(symbol="PORTFOLIO", recommendation="ERROR", summary=str(exc))

    # ── Internals ──

    async def _fetch_klines(self, session: aiohttp.ClientSession,
                            symbol: str) -> List[Kline]:
        if not symbol:
            return []
        params = {"symbol": symbol, "interval": KLINE_INTERVAL, "limit": str(KLINE_LIMIT)}
        async with session.get(self._klines_url, params=params) as resp:
            if resp.status != 200:
                log.warning("klines %d for %s", resp.status, symbol)
                return []
            klines = parse_klines(await resp.json(content_type=None))
        log.debug("fetched %d klines for %s", len(klines), symbol)
        return klines

    async def _chat(self, session: aiohttp.ClientSession, prompt: str,
                    max_tokens: int) -> str:
        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with session.post(self._chat_url, json=body, headers=headers) as resp:
            payload = await resp.json(content_type=None)
            if resp.status != 200:
                raise RuntimeError(f"openai http {resp.status}: {payload}")
        try:
            return str(payload["choices"][0]["message"]["content"]).strip()
        except (KeyError, IndexError, TypeError) as exc:
            raise RuntimeError("unexpected completion payload") from exc
