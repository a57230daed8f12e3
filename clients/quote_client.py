"""
Quote client backed by yfinance.
Provides the async get_quote() used by the outcome tracker.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

import yfinance as yf

logger = logging.getLogger(__name__)


class QuoteClient:
    """Latest price lookup with a short in-process cache."""

    def __init__(self, cache_minutes: int = 5):
        self._cache: Dict[str, Dict] = {}
        self._cache_duration = timedelta(minutes=cache_minutes)

    def _fetch_quote(self, symbol: str) -> Optional[Dict]:
        stock = yf.Ticker(symbol)
        price = None

        hist = stock.history(period="1d")
        if hist is not None and not hist.empty:
            price = float(hist['Close'].iloc[-1])

        if not price:
            info = stock.info or {}
            price = info.get('currentPrice', info.get('regularMarketPrice'))

        if not price:
            return None
        return {
            'symbol': symbol,
            'price': float(price),
            'timestamp': datetime.now().isoformat(),
        }

    async def get_quote(self, symbol: str) -> Optional[Dict]:
        """Return {'symbol', 'price', 'timestamp'} or None when no price is available."""
        cache_key = symbol.upper()
        entry = self._cache.get(cache_key)
        if entry and datetime.now() - entry['fetched_at'] < self._cache_duration:
            return entry['quote']

        loop = asyncio.get_running_loop()
        try:
            quote = await loop.run_in_executor(None, self._fetch_quote, cache_key)
        except Exception as e:
            logger.error(f"Error fetching quote for {symbol}: {e}")
            return None

        if quote is None:
            logger.warning(f"No price available for {symbol}")
            return None

        self._cache[cache_key] = {'quote': quote, 'fetched_at': datetime.now()}
        return quote

    def clear_cache(self):
        self._cache.clear()
