from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

YAHOO_CHART_URL = "https://query2.finance.yahoo.com/v8/finance/chart/{symbol}?interval=1d&range=1d"


@dataclass(frozen=True)
class PriceQuote:
    provider: str
    ticker: str
    symbol: str
    price: Decimal
    fetched_at: datetime

    @property
    def price_cents(self) -> int:
        return int(
            (self.price * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )


class _Retryable(Exception):
    pass


class PriceQuoteService:
    def __init__(
        self, settings: Optional[Settings] = None, *, retry_delay_secs: float = 1.0
    ) -> None:
        self.settings = settings or get_settings()
        self.retry_delay_secs = retry_delay_secs

    def symbol_for(self, ticker: str) -> str:
        clean = ticker.strip().upper()
        suffix = self.settings.quote_symbol_suffix
        if suffix and "." not in clean:
            return clean + suffix
        return clean

    def quote(self, ticker: str) -> PriceQuote:
        provider = (self.settings.quote_provider or "yahoo").lower()
        if provider != "yahoo":
            raise ExternalServiceError(f"Unsupported quote provider: {provider}")

        symbol = self.symbol_for(ticker)
        attempts = self.settings.quote_retries
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                price = _fetch_yahoo_price(
                    symbol, timeout=self.settings.quote_timeout_secs
                )
            except _Retryable as exc:
                last_error = exc
                logger.warning(
                    f"quote_retry: symbol={symbol} attempt={attempt}/{attempts} error={exc}"
                )
                if attempt < attempts and self.retry_delay_secs:
                    time.sleep(self.retry_delay_secs)
                continue
            return PriceQuote(
                provider="yahoo",
                ticker=ticker.strip().upper(),
                symbol=symbol,
                price=price,
                fetched_at=datetime.now(timezone.utc),
            )
        raise ExternalServiceError(
            f"Failed to fetch price for {symbol}: {last_error}"
        ) from last_error


def _fetch_yahoo_price(symbol: str, *, timeout: float) -> Decimal:
    url = YAHOO_CHART_URL.format(symbol=quote(symbol, safe=""))
    req = Request(
        url,
        headers={
            "Accept": "application/json",
            "User-Agent": "Mozilla/5.0 (X11; Linux x86_64)",
        },
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        if exc.code == 429 or exc.code >= 500:
            raise _Retryable(f"HTTP {exc.code}") from exc
        raise ExternalServiceError(
            f"Quote provider returned HTTP {exc.code} for {symbol}"
        ) from exc
    except (URLError, TimeoutError) as exc:
        raise _Retryable(str(exc)) from exc
    except json.JSONDecodeError as exc:
        raise ExternalServiceError("Unexpected quote provider response") from exc

    try:
        meta = payload["chart"]["result"][0]["meta"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ExternalServiceError(f"No quote data for {symbol}") from exc

    raw = meta.get("regularMarketPrice")
    if raw is None:
        raw = meta.get("previousClose")
    if raw is None:
        raise ExternalServiceError(f"Price not found for {symbol}")
    try:
        price = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ExternalServiceError(f"Invalid price for {symbol}: {raw!r}") from exc
    if price < 0:
        raise ExternalServiceError(f"Invalid price for {symbol}: {raw!r}")
    return price
