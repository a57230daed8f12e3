"""
Recommendation Outcome Tracker
Follows the live price of every open buy/watch recommendation and records a
realised outcome once the position resolves.

Open entries live in an in-memory arena keyed by "{symbol}_{recommendation_id}".
Every insert, removal and price update happens under one asyncio.Lock; sweeps
iterate over a snapshot and do their network I/O outside the lock.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from core.config import TRACKING_CONFIG
from engine.adaptive_scoring import normalize_metrics

logger = logging.getLogger(__name__)

EPSILON = 1e-9


@dataclass
class TrackingEntry:
    symbol: str
    recommendation_id: int
    entry_price: float
    entry_date: datetime
    current_price: Optional[float] = None
    max_price: Optional[float] = None
    min_price: Optional[float] = None
    last_updated: Optional[datetime] = None
    entry_conditions: Optional[Dict] = None

    def __post_init__(self):
        if self.current_price is None:
            self.current_price = self.entry_price
        if self.max_price is None:
            self.max_price = self.entry_price
        if self.min_price is None:
            self.min_price = self.entry_price
        if self.last_updated is None:
            self.last_updated = self.entry_date

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.recommendation_id}"

    def observe(self, price: float, at: datetime):
        self.current_price = price
        self.max_price = max(self.max_price, price)
        self.min_price = min(self.min_price, price)
        self.last_updated = at

    def current_return(self) -> float:
        return (self.current_price - self.entry_price) / self.entry_price

    def hold_days(self, now: datetime) -> float:
        return (now - self.entry_date).total_seconds() / 86400

    def to_dict(self, now: Optional[datetime] = None) -> Dict:
        data = {
            'symbol': self.symbol,
            'recommendation_id': self.recommendation_id,
            'entry_price': self.entry_price,
            'entry_date': self.entry_date.isoformat(),
            'current_price': self.current_price,
            'max_price': self.max_price,
            'min_price': self.min_price,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
            'current_return': self.current_return(),
        }
        if now is not None:
            data['days_held'] = self.hold_days(now)
        return data


def should_close(entry: TrackingEntry, now: datetime) -> bool:
    """Close on a significant move, on reaching the maximum hold, or on a wide trading range."""
    if abs(entry.current_return()) >= TRACKING_CONFIG['significant_move'] - EPSILON:
        return True
    if entry.hold_days(now) >= TRACKING_CONFIG['max_hold_days']:
        return True
    price_range = (entry.max_price - entry.min_price) / entry.entry_price
    return price_range >= TRACKING_CONFIG['volatility_range'] - EPSILON


def classify_outcome(total_return: float) -> str:
    if total_return >= TRACKING_CONFIG['profit_threshold'] - EPSILON:
        return 'profitable'
    if total_return <= TRACKING_CONFIG['loss_threshold'] + EPSILON:
        return 'unprofitable'
    return 'neutral'


def analyze_outcome(entry: TrackingEntry, now: datetime) -> Dict:
    total_return = entry.current_return()
    outcome_type = classify_outcome(total_return)
    days = entry.hold_days(now)
    return {
        'recommendation_id': entry.recommendation_id,
        'symbol': entry.symbol,
        'outcome_type': outcome_type,
        'total_return': total_return,
        'max_gain': (entry.max_price - entry.entry_price) / entry.entry_price,
        'max_loss': (entry.min_price - entry.entry_price) / entry.entry_price,
        'days_held': days,
        'notes': (f"{outcome_type} after {days:.1f} days: entry {entry.entry_price:.2f}, "
                  f"exit {entry.current_price:.2f} ({total_return:+.2%})"),
    }


class RecommendationTracker:
    def __init__(self, store, quote_client, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.quote_client = quote_client
        self.clock = clock
        self._entries: Dict[str, TrackingEntry] = {}
        self._lock = asyncio.Lock()
        self._closing: Set[int] = set()
        self._sweep_in_progress = False
        self.last_sweep: Optional[datetime] = None

    @property
    def is_updating(self) -> bool:
        return self._sweep_in_progress

    async def _get_current_price(self, symbol: str) -> Optional[float]:
        quote = await self.quote_client.get_quote(symbol)
        if not quote or not quote.get('price'):
            return None
        return float(quote['price'])

    async def start_tracking(self, symbol: str, recommendation_id: int,
                             entry_price: Optional[float] = None,
                             entry_date: Optional[datetime] = None,
                             entry_conditions: Optional[Dict] = None) -> Optional[TrackingEntry]:
        """Open an entry for a recommendation. Returns None when no entry price is available."""
        if entry_price is None or entry_price <= 0:
            entry_price = await self._get_current_price(symbol)
        if not entry_price:
            logger.warning(f"No price for {symbol}, recommendation {recommendation_id} not tracked")
            return None

        entry = TrackingEntry(
            symbol=symbol.upper(),
            recommendation_id=recommendation_id,
            entry_price=float(entry_price),
            entry_date=entry_date or self.clock(),
            entry_conditions=entry_conditions,
        )
        async with self._lock:
            existing = self._entries.get(entry.key)
            if existing:
                return existing
            self._entries[entry.key] = entry
        logger.info(f"Tracking {entry.symbol} (recommendation {recommendation_id}) from {entry.entry_price:.2f}")
        return entry

    async def restore_open_tracking(self) -> int:
        """Re-open untracked buy/watch recommendations after a restart."""
        recommendations = await self.store.get_recent_recommendations(
            days=TRACKING_CONFIG['restore_lookback_days'],
            types=TRACKING_CONFIG['tracked_types'],
            tracked=False,
        )
        restored = 0
        for rec in recommendations:
            conditions = normalize_metrics(rec.get('market_conditions'))
            entry = await self.start_tracking(
                rec['symbol'], rec['id'],
                entry_price=conditions.get('current_price'),
                entry_date=datetime.fromisoformat(rec['created_at']),
                entry_conditions=rec.get('market_conditions'),
            )
            if entry:
                restored += 1
        if restored:
            logger.info(f"Restored {restored} open recommendation(s) for tracking")
        return restored

    async def update_tracking(self) -> Dict:
        """Poll prices for all open entries and close the ones that resolved."""
        if self._sweep_in_progress:
            logger.info("Tracking sweep already in progress, skipping")
            return {'skipped': True}

        self._sweep_in_progress = True
        summary = {'skipped': False, 'checked': 0, 'updated': 0, 'closed': 0, 'no_price': 0, 'errors': 0}
        try:
            async with self._lock:
                snapshot = list(self._entries.values())

            for entry in snapshot:
                summary['checked'] += 1
                try:
                    price = await self._get_current_price(entry.symbol)
                    if price is None:
                        summary['no_price'] += 1
                        continue

                    now = self.clock()
                    async with self._lock:
                        if entry.key not in self._entries:
                            continue
                        entry.observe(price, now)
                        closing = should_close(entry, now)
                    summary['updated'] += 1

                    if closing and await self._close(entry):
                        summary['closed'] += 1
                except Exception as e:
                    summary['errors'] += 1
                    logger.error(f"Tracking update failed for {entry.symbol} "
                                 f"(recommendation {entry.recommendation_id}): {e}", exc_info=True)
        finally:
            self._sweep_in_progress = False
            self.last_sweep = self.clock()

        if summary['closed'] or summary['errors']:
            logger.info(f"Tracking sweep: {summary}")
        return summary

    async def _close(self, entry: TrackingEntry) -> Optional[Dict]:
        """Claim the entry, write the outcome, then fold it into stock memory."""
        async with self._lock:
            if self._entries.get(entry.key) is not entry or entry.recommendation_id in self._closing:
                return None
            self._closing.add(entry.recommendation_id)
            del self._entries[entry.key]

        now = self.clock()
        outcome = analyze_outcome(entry, now)
        try:
            written = await self.store.update_recommendation_outcome(
                entry.recommendation_id,
                outcome['outcome_type'],
                outcome['total_return'],
                max_gain=outcome['max_gain'],
                max_loss=outcome['max_loss'],
                days_to_outcome=outcome['days_held'],
                notes=outcome['notes'],
                outcome_date=now,
            )
        except Exception:
            async with self._lock:
                self._entries.setdefault(entry.key, entry)
            raise
        finally:
            async with self._lock:
                self._closing.discard(entry.recommendation_id)

        if not written:
            return None
        await self.store.record_stock_outcome(
            entry.symbol,
            outcome['total_return'],
            outcome['days_held'],
            outcome['outcome_type'],
            entry.entry_conditions,
        )
        logger.info(f"Closed {entry.symbol} recommendation {entry.recommendation_id}: "
                    f"{outcome['outcome_type']} {outcome['total_return']:+.2%}")
        return outcome

    async def force_close_tracking(self, recommendation_id: int) -> Optional[Dict]:
        """Close an open entry now. Unknown or already closed ids are a no-op."""
        async with self._lock:
            entry = next((e for e in self._entries.values() if e.recommendation_id == recommendation_id), None)
        if entry is None:
            logger.debug(f"No open tracking for recommendation {recommendation_id}")
            return None

        price = await self._get_current_price(entry.symbol)
        if price is not None:
            async with self._lock:
                if entry.key in self._entries:
                    entry.observe(price, self.clock())
        return await self._close(entry)

    def get_active_tracking(self) -> List[Dict]:
        now = self.clock()
        return [entry.to_dict(now) for entry in self._entries.values()]

    @property
    def active_count(self) -> int:
        return len(self._entries)

    async def get_performance_summary(self) -> Dict:
        insights = await self.store.generate_learning_insights()
        return {
            'active_tracking_count': len(self._entries),
            'active_symbols': sorted({entry.symbol for entry in self._entries.values()}),
            'overall_performance': insights['recent_performance'],
            'best_performing_stocks': insights['top_performing_stocks'],
            'worst_performing_stocks': insights['worst_performing_stocks'],
            'last_sweep': self.last_sweep.isoformat() if self.last_sweep else None,
        }
