"""
Shared helpers for the learning engine tests
"""
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path


class FakeQuoteClient:
    """Serves prices from a dict; symbols in `failing` raise."""

    def __init__(self, prices=None, failing=None):
        self.prices = dict(prices or {})
        self.failing = set(failing or ())
        self.calls = []

    async def get_quote(self, symbol):
        self.calls.append(symbol)
        if symbol in self.failing:
            raise ConnectionError(f"quote feed down for {symbol}")
        price = self.prices.get(symbol)
        if price is None:
            return None
        return {'symbol': symbol, 'price': price, 'timestamp': datetime.now().isoformat()}


class FrozenClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_temp_db() -> Path:
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp_db.close()
    return Path(temp_db.name)


def remove_temp_db(path: Path):
    for suffix in ('', '-wal', '-shm'):
        try:
            os.unlink(f"{path}{suffix}")
        except OSError:
            pass


PROFITABLE_SETUP = {
    'short_interest': 45, 'days_to_cover': 4, 'volume_ratio': 3, 'borrow_rate': 100,
    'price_change': 0.03, 'float': 30_000_000, 'current_price': 10.0,
}
UNPROFITABLE_SETUP = {
    'short_interest': 30, 'days_to_cover': 3, 'volume_ratio': 3, 'borrow_rate': 100,
    'price_change': 0.03, 'float': 30_000_000, 'current_price': 10.0,
}


async def seed_tracked(store, symbol, outcome_type, outcome_return, market_conditions,
                       days_to_outcome=5.0, recommendation_type='buy', created_at=None):
    """Save a recommendation and immediately record its closed outcome."""
    rec_id = await store.save_recommendation(
        symbol, recommendation_type, f"{symbol} looks interesting", confidence=0.8,
        market_conditions=market_conditions, created_at=created_at,
    )
    await store.update_recommendation_outcome(
        rec_id, outcome_type, outcome_return, days_to_outcome=days_to_outcome,
    )
    return rec_id


async def seed_learning_history(store, profitable=12, unprofitable=12):
    """Outcomes where high short interest and days-to-cover separated winners from losers."""
    ids = []
    for i in range(profitable):
        ids.append(await seed_tracked(store, f"WIN{chr(65 + i % 26)}", 'profitable', 0.12, PROFITABLE_SETUP))
    for i in range(unprofitable):
        ids.append(await seed_tracked(store, f"LOS{chr(65 + i % 26)}", 'unprofitable', -0.08, UNPROFITABLE_SETUP))
    return ids
