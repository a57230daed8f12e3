"""
SQLite Memory Store for the Learning Engine
Persists conversations, recommendations and their outcomes, per-symbol memory,
market patterns, versioned strategy parameters and optimization reports.

Blocking sqlite3 work runs on a single-worker thread pool owned by the store,
so every write goes through one connection at a time and the event loop is
never blocked. Public coroutine methods wrap the synchronous implementations.
"""
import asyncio
import functools
import json
import logging
import sqlite3
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from core.config import DB_PATH, DEFAULT_SETTINGS

RECOMMENDATION_TYPES = ('buy', 'sell', 'hold', 'watch', 'analysis')
OUTCOME_TYPES = ('profitable', 'unprofitable', 'neutral', 'unknown')
MESSAGE_TYPES = ('user', 'assistant', 'system')

WEIGHT_COLUMNS = (
    'short_interest', 'days_to_cover', 'borrow_rate', 'volume',
    'float', 'price_action', 'sentiment',
)
THRESHOLD_COLUMNS = (
    'min_short_interest', 'min_days_to_cover', 'min_borrow_rate',
    'min_volume_ratio', 'min_score_threshold',
)
PERFORMANCE_COLUMNS = (
    'recommendations_count', 'successful_recommendations', 'total_return',
    'avg_return', 'win_rate', 'sharpe_ratio',
)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == '':
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class MemoryStore:
    def __init__(self, db_path: Path = DB_PATH, clock: Callable[[], datetime] = datetime.now):
        self.db_path = Path(db_path)
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.retry_delay = 0.5  # seconds

        # Ensure database directory exists
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            self.logger.error(f"Failed to create database directory: {e}")
            raise

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memory-store")
        self._init_db()
        self.current_session_id = self.generate_session_id()

    # === Connection handling ===

    def _get_conn(self, timeout: float = 10.0) -> sqlite3.Connection:
        """Get database connection with retry logic and proper configuration"""
        max_attempts = 3
        for attempt in range(max_attempts):
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=timeout,
                    check_same_thread=False
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                return conn

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < max_attempts - 1:
                    wait_time = self.retry_delay * (2 ** attempt)
                    self.logger.warning(f"Database locked, retrying in {wait_time}s (attempt {attempt + 1}/{max_attempts})")
                    time.sleep(wait_time)
                    continue
                self.logger.error(f"Database connection error: {e}")
                raise

        raise sqlite3.OperationalError("Failed to connect to database after all retries")

    @contextmanager
    def _get_transaction(self, immediate: bool = False):
        """Context manager for database transactions with automatic rollback on error"""
        conn = None
        try:
            conn = self._get_conn()
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception as e:
            if conn:
                conn.rollback()
                self.logger.error(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    def close(self):
        """Stop the worker thread. Pending writes finish first."""
        self._executor.shutdown(wait=True)

    def _now(self) -> datetime:
        return self.clock()

    def _cutoff(self, days: float) -> str:
        return (self._now() - timedelta(days=days)).isoformat()

    def _init_db(self):
        """Initialize database tables"""
        with self._get_transaction() as conn:
            cursor = conn.cursor()

            # Settings table (key-value store)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    user_id TEXT DEFAULT 'default_user',
                    message_type TEXT NOT NULL,
                    message_content TEXT NOT NULL,
                    message_context TEXT,
                    timestamp TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS recommendations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    type TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    text TEXT,
                    confidence REAL DEFAULT 0.5,
                    reasoning TEXT,
                    market_conditions TEXT,
                    price_targets TEXT,
                    timeframe TEXT,
                    source TEXT DEFAULT 'ai_chat',
                    created_at TEXT NOT NULL,
                    outcome_tracked INTEGER DEFAULT 0,
                    outcome_type TEXT,
                    outcome_return REAL,
                    outcome_date TEXT,
                    outcome_notes TEXT,
                    max_gain REAL,
                    max_loss REAL,
                    days_to_outcome REAL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS stock_memory (
                    symbol TEXT PRIMARY KEY,
                    times_recommended INTEGER DEFAULT 0,
                    times_analyzed INTEGER DEFAULT 0,
                    first_mention TEXT,
                    last_mention TEXT,
                    total_recommendations INTEGER DEFAULT 0,
                    successful_recommendations INTEGER DEFAULT 0,
                    failed_recommendations INTEGER DEFAULT 0,
                    avg_recommendation_return REAL DEFAULT 0,
                    best_return REAL,
                    worst_return REAL,
                    typical_hold_period REAL DEFAULT 0,
                    best_entry_conditions TEXT,
                    worst_entry_conditions TEXT,
                    updated_at TEXT
                )
            """)

            # Patterns are append-only: each update is a new revision
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS market_patterns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pattern_name TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    pattern_type TEXT NOT NULL,
                    pattern_features TEXT NOT NULL,
                    occurrences INTEGER NOT NULL,
                    successful_outcomes INTEGER NOT NULL,
                    success_rate REAL NOT NULL,
                    avg_return REAL NOT NULL,
                    avg_hold_period REAL NOT NULL,
                    confidence_score REAL NOT NULL,
                    first_observed TEXT,
                    last_observed TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (pattern_name, revision)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pattern_observations (
                    pattern_name TEXT NOT NULL,
                    recommendation_id INTEGER NOT NULL,
                    absorbed_at TEXT NOT NULL,
                    PRIMARY KEY (pattern_name, recommendation_id)
                )
            """)

            # Insert-only; the highest version is the active one
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS strategy_parameters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    parameter_set_name TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    short_interest REAL NOT NULL,
                    days_to_cover REAL NOT NULL,
                    borrow_rate REAL NOT NULL,
                    volume REAL NOT NULL,
                    float REAL NOT NULL,
                    price_action REAL NOT NULL,
                    sentiment REAL NOT NULL,
                    min_short_interest REAL NOT NULL,
                    min_days_to_cover REAL NOT NULL,
                    min_borrow_rate REAL NOT NULL,
                    min_volume_ratio REAL NOT NULL,
                    min_score_threshold REAL NOT NULL,
                    recommendations_count INTEGER DEFAULT 0,
                    successful_recommendations INTEGER DEFAULT 0,
                    total_return REAL DEFAULT 0,
                    avg_return REAL DEFAULT 0,
                    win_rate REAL DEFAULT 0,
                    sharpe_ratio REAL DEFAULT 0,
                    creation_reason TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (parameter_set_name, version)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS optimization_reports (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL,
                    report TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(session_id, timestamp)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_recommendations_symbol ON recommendations(symbol)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_recommendations_created ON recommendations(created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_recommendations_tracked ON recommendations(outcome_tracked)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_patterns_name ON market_patterns(pattern_name, revision)")

            # Migrate recommendations: add columns if missing
            cursor.execute("PRAGMA table_info(recommendations)")
            rec_cols = {row['name'] for row in cursor.fetchall()}
            rec_migrations = [
                ("source", "TEXT DEFAULT 'ai_chat'"),
                ("outcome_notes", "TEXT"),
            ]
            for col_name, col_type in rec_migrations:
                if col_name not in rec_cols:
                    cursor.execute(f"ALTER TABLE recommendations ADD COLUMN {col_name} {col_type}")

    # === Generic helpers ===

    def query(self, sql: str, params: tuple = ()) -> List[Dict]:
        """Execute SELECT query and return list of dicts"""
        try:
            conn = self._get_conn()
            try:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
            finally:
                conn.close()
        except Exception as e:
            self.logger.error(f"Query error: {e}", exc_info=True)
            return []

    def query_one(self, sql: str, params: tuple = (), raise_errors: bool = False) -> Optional[Dict]:
        """Execute SELECT query and return single dict or None.

        With raise_errors the database error propagates, so None always means "no row".
        """
        try:
            conn = self._get_conn()
            try:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                row = cursor.fetchone()
                return dict(row) if row else None
            finally:
                conn.close()
        except Exception as e:
            self.logger.error(f"Query one error: {e}", exc_info=True)
            if raise_errors:
                raise
            return None

    def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute INSERT/UPDATE/DELETE query, returns affected row count"""
        try:
            with self._get_transaction() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return cursor.rowcount
        except Exception as e:
            self.logger.error(f"Execute error: {e}", exc_info=True)
            raise

    # === Settings ===

    def get_setting(self, key: str) -> Any:
        """Get setting, falling back to DEFAULT_SETTINGS"""
        if not key or not isinstance(key, str):
            self.logger.error("Invalid setting key")
            return None

        row = self.query_one("SELECT value FROM settings WHERE key = ?", (key,))
        if row:
            value = _loads(row['value'])
            if value is not None:
                return value
        return DEFAULT_SETTINGS.get(key)

    def _get_settings(self, keys) -> Dict[str, Any]:
        return {key: self.get_setting(key) for key in keys}

    async def get_settings(self, *keys: str) -> Dict[str, Any]:
        """Read several settings on the store's worker thread"""
        return await self._run(self._get_settings, keys)

    def set_setting(self, key: str, value: Any):
        """Set setting with validation"""
        if not key or not isinstance(key, str):
            raise ValueError("Setting key must be a non-empty string")
        try:
            json_value = json.dumps(value)
        except (TypeError, ValueError):
            raise ValueError(f"Value for {key} cannot be serialized to JSON")

        self.execute("""
            INSERT INTO settings (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
        """, (key, json_value))

    # === Sessions ===

    def generate_session_id(self) -> str:
        return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def start_new_session(self) -> str:
        self.current_session_id = self.generate_session_id()
        self.logger.info(f"Started new learning session {self.current_session_id}")
        return self.current_session_id

    # === Conversations ===

    def _save_conversation(self, message_type: str, content: str, session_id: Optional[str] = None,
                           context: Optional[Dict] = None, user_id: str = 'default_user') -> int:
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {message_type}")
        with self._get_transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO conversations (session_id, user_id, message_type, message_content, message_context, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                session_id or self.current_session_id,
                user_id,
                message_type,
                content,
                _dumps(context),
                self._now().isoformat(),
            ))
            return cursor.lastrowid

    def _get_conversation_history(self, session_id: Optional[str] = None, limit: int = 50) -> List[Dict]:
        rows = self.query("""
            SELECT * FROM conversations
            WHERE session_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """, (session_id or self.current_session_id, limit))
        for row in rows:
            row['message_context'] = _loads(row['message_context'], {})
        rows.reverse()
        return rows

    def _get_recent_conversations(self, hours: float = 24, limit: int = 100) -> List[Dict]:
        cutoff = (self._now() - timedelta(hours=hours)).isoformat()
        rows = self.query("""
            SELECT * FROM conversations
            WHERE timestamp >= ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """, (cutoff, limit))
        for row in rows:
            row['message_context'] = _loads(row['message_context'], {})
        return rows

    async def save_conversation(self, message_type: str, content: str, session_id: Optional[str] = None,
                                context: Optional[Dict] = None, user_id: str = 'default_user') -> int:
        return await self._run(self._save_conversation, message_type, content, session_id, context, user_id)

    async def get_conversation_history(self, session_id: Optional[str] = None, limit: int = 50) -> List[Dict]:
        return await self._run(self._get_conversation_history, session_id, limit)

    async def get_recent_conversations(self, hours: float = 24, limit: int = 100) -> List[Dict]:
        return await self._run(self._get_recent_conversations, hours, limit)

    # === Recommendations ===

    @staticmethod
    def _row_to_recommendation(row: Dict) -> Dict:
        row['market_conditions'] = _loads(row.get('market_conditions'), {})
        row['price_targets'] = _loads(row.get('price_targets'), [])
        row['outcome_tracked'] = bool(row.get('outcome_tracked'))
        return row

    def _save_recommendation(self, symbol: str, recommendation_type: str, text: str,
                             confidence: float = 0.5, reasoning: Optional[str] = None,
                             market_conditions: Optional[Dict] = None,
                             price_targets: Optional[List[str]] = None,
                             timeframe: Optional[str] = None,
                             session_id: Optional[str] = None,
                             source: str = 'ai_chat',
                             created_at: Optional[datetime] = None) -> int:
        if not symbol or not isinstance(symbol, str):
            raise ValueError("Recommendation symbol must be a non-empty string")
        if recommendation_type not in RECOMMENDATION_TYPES:
            raise ValueError(f"Unknown recommendation type: {recommendation_type}")
        if not 0.0 <= float(confidence) <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {confidence}")

        with self._get_transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO recommendations
                    (session_id, type, symbol, text, confidence, reasoning, market_conditions,
                     price_targets, timeframe, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session_id or self.current_session_id,
                recommendation_type,
                symbol.upper(),
                text,
                float(confidence),
                reasoning,
                _dumps(market_conditions or {}),
                _dumps(price_targets or []),
                timeframe,
                source,
                (created_at or self._now()).isoformat(),
            ))
            return cursor.lastrowid

    def _update_recommendation_outcome(self, recommendation_id: int, outcome_type: str,
                                       outcome_return: float, max_gain: Optional[float] = None,
                                       max_loss: Optional[float] = None,
                                       days_to_outcome: Optional[float] = None,
                                       notes: Optional[str] = None,
                                       outcome_date: Optional[datetime] = None) -> bool:
        """Write a closed outcome. Rows already tracked are left untouched."""
        if outcome_type not in OUTCOME_TYPES:
            raise ValueError(f"Unknown outcome type: {outcome_type}")
        with self._get_transaction() as conn:
            cursor = conn.execute("""
                UPDATE recommendations
                SET outcome_tracked = 1,
                    outcome_type = ?,
                    outcome_return = ?,
                    outcome_date = ?,
                    outcome_notes = ?,
                    max_gain = ?,
                    max_loss = ?,
                    days_to_outcome = ?
                WHERE id = ? AND outcome_tracked = 0
            """, (
                outcome_type,
                outcome_return,
                (outcome_date or self._now()).isoformat(),
                notes,
                max_gain,
                max_loss,
                days_to_outcome,
                recommendation_id,
            ))
            updated = cursor.rowcount > 0
        if not updated:
            self.logger.warning(f"Outcome for recommendation {recommendation_id} already recorded or row missing")
        return updated

    def _get_recommendation(self, recommendation_id: int) -> Optional[Dict]:
        row = self.query_one("SELECT * FROM recommendations WHERE id = ?", (recommendation_id,))
        return self._row_to_recommendation(row) if row else None

    def _get_recent_recommendations(self, days: float = 30, symbol: Optional[str] = None,
                                    types: Optional[Iterable[str]] = None,
                                    tracked: Optional[bool] = None,
                                    limit: Optional[int] = None) -> List[Dict]:
        sql = "SELECT * FROM recommendations WHERE created_at >= ?"
        params: List[Any] = [self._cutoff(days)]
        if symbol:
            sql += " AND symbol = ?"
            params.append(symbol.upper())
        if types:
            types = list(types)
            sql += f" AND type IN ({','.join('?' for _ in types)})"
            params.extend(types)
        if tracked is not None:
            sql += " AND outcome_tracked = ?"
            params.append(1 if tracked else 0)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_recommendation(row) for row in self.query(sql, tuple(params))]

    def _get_recommendation_performance(self, symbol: Optional[str] = None, days: Optional[float] = 30) -> Dict:
        """Outcome statistics for the window; days=None covers all history."""
        sql = """
            SELECT
                COUNT(*) AS total_recommendations,
                COALESCE(SUM(outcome_tracked), 0) AS tracked_outcomes,
                COALESCE(SUM(CASE WHEN outcome_type = 'profitable' THEN 1 ELSE 0 END), 0) AS profitable_count,
                COALESCE(SUM(CASE WHEN outcome_type = 'unprofitable' THEN 1 ELSE 0 END), 0) AS unprofitable_count,
                COALESCE(SUM(CASE WHEN outcome_type = 'neutral' THEN 1 ELSE 0 END), 0) AS neutral_count,
                AVG(CASE WHEN outcome_tracked = 1 THEN outcome_return END) AS avg_return,
                AVG(CASE WHEN outcome_tracked = 1 THEN days_to_outcome END) AS avg_days_to_outcome
            FROM recommendations
            WHERE created_at >= ?
        """
        params: List[Any] = [self._cutoff(days) if days is not None else '']
        if symbol:
            sql += " AND symbol = ?"
            params.append(symbol.upper())

        row = self.query_one(sql, tuple(params)) or {}
        total = row.get('total_recommendations') or 0
        tracked = row.get('tracked_outcomes') or 0
        profitable = row.get('profitable_count') or 0
        return {
            'total_recommendations': total,
            'tracked_outcomes': tracked,
            'profitable_count': profitable,
            'unprofitable_count': row.get('unprofitable_count') or 0,
            'neutral_count': row.get('neutral_count') or 0,
            'win_rate': profitable / tracked if tracked else 0.0,
            'avg_return': row.get('avg_return') or 0.0,
            'avg_days_to_outcome': row.get('avg_days_to_outcome') or 0.0,
            'tracking_rate': tracked / total if total else 0.0,
        }

    def _count_recommendations(self, days: Optional[float] = None, tracked_only: bool = False) -> int:
        sql = "SELECT COUNT(*) AS n FROM recommendations WHERE 1 = 1"
        params: List[Any] = []
        if days is not None:
            sql += " AND created_at >= ?"
            params.append(self._cutoff(days))
        if tracked_only:
            sql += " AND outcome_tracked = 1"
        row = self.query_one(sql, tuple(params))
        return row['n'] if row else 0

    async def save_recommendation(self, symbol: str, recommendation_type: str, text: str,
                                  confidence: float = 0.5, reasoning: Optional[str] = None,
                                  market_conditions: Optional[Dict] = None,
                                  price_targets: Optional[List[str]] = None,
                                  timeframe: Optional[str] = None,
                                  session_id: Optional[str] = None,
                                  source: str = 'ai_chat',
                                  created_at: Optional[datetime] = None) -> int:
        return await self._run(
            self._save_recommendation, symbol, recommendation_type, text, confidence, reasoning,
            market_conditions, price_targets, timeframe, session_id, source, created_at,
        )

    async def update_recommendation_outcome(self, recommendation_id: int, outcome_type: str,
                                            outcome_return: float, max_gain: Optional[float] = None,
                                            max_loss: Optional[float] = None,
                                            days_to_outcome: Optional[float] = None,
                                            notes: Optional[str] = None,
                                            outcome_date: Optional[datetime] = None) -> bool:
        return await self._run(
            self._update_recommendation_outcome, recommendation_id, outcome_type, outcome_return,
            max_gain, max_loss, days_to_outcome, notes, outcome_date,
        )

    async def get_recommendation(self, recommendation_id: int) -> Optional[Dict]:
        return await self._run(self._get_recommendation, recommendation_id)

    async def get_recent_recommendations(self, days: float = 30, symbol: Optional[str] = None,
                                         types: Optional[Iterable[str]] = None,
                                         tracked: Optional[bool] = None,
                                         limit: Optional[int] = None) -> List[Dict]:
        return await self._run(self._get_recent_recommendations, days, symbol, types, tracked, limit)

    async def get_recommendation_performance(self, symbol: Optional[str] = None, days: Optional[float] = 30) -> Dict:
        return await self._run(self._get_recommendation_performance, symbol, days)

    async def count_recommendations(self, days: Optional[float] = None) -> int:
        return await self._run(self._count_recommendations, days, False)

    async def count_tracked_recommendations(self, days: Optional[float] = None) -> int:
        return await self._run(self._count_recommendations, days, True)

    # === Stock memory ===

    def _record_stock_mention(self, symbol: str, recommendation_type: str) -> None:
        now = self._now().isoformat()
        recommended = 1 if recommendation_type in ('buy', 'watch') else 0
        with self._get_transaction() as conn:
            conn.execute("""
                INSERT INTO stock_memory (symbol, times_recommended, times_analyzed, first_mention, last_mention, updated_at)
                VALUES (?, ?, 1, ?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    times_recommended = times_recommended + excluded.times_recommended,
                    times_analyzed = times_analyzed + 1,
                    last_mention = excluded.last_mention,
                    updated_at = excluded.updated_at
            """, (symbol.upper(), recommended, now, now, now))

    def _record_stock_outcome(self, symbol: str, outcome_return: float, hold_days: float,
                              outcome_type: str, entry_conditions: Optional[Dict] = None) -> Dict:
        """Fold one closed outcome into the symbol's running aggregates."""
        symbol = symbol.upper()
        now = self._now().isoformat()
        with self._get_transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM stock_memory WHERE symbol = ?", (symbol,)).fetchone()
            if row is None:
                conn.execute("""
                    INSERT INTO stock_memory (symbol, first_mention, last_mention, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (symbol, now, now, now))
                row = conn.execute("SELECT * FROM stock_memory WHERE symbol = ?", (symbol,)).fetchone()
            memory = dict(row)

            n = memory['total_recommendations'] or 0
            avg_return = ((memory['avg_recommendation_return'] or 0.0) * n + outcome_return) / (n + 1)
            hold_period = ((memory['typical_hold_period'] or 0.0) * n + hold_days) / (n + 1)

            best = memory['best_return']
            worst = memory['worst_return']
            best_conditions = memory['best_entry_conditions']
            worst_conditions = memory['worst_entry_conditions']
            if n == 0 or best is None or outcome_return > best:
                best = outcome_return
                best_conditions = _dumps(entry_conditions)
            if n == 0 or worst is None or outcome_return < worst:
                worst = outcome_return
                worst_conditions = _dumps(entry_conditions)

            conn.execute("""
                UPDATE stock_memory
                SET total_recommendations = ?,
                    successful_recommendations = successful_recommendations + ?,
                    failed_recommendations = failed_recommendations + ?,
                    avg_recommendation_return = ?,
                    typical_hold_period = ?,
                    best_return = ?,
                    worst_return = ?,
                    best_entry_conditions = ?,
                    worst_entry_conditions = ?,
                    updated_at = ?
                WHERE symbol = ?
            """, (
                n + 1,
                1 if outcome_type == 'profitable' else 0,
                1 if outcome_type == 'unprofitable' else 0,
                avg_return,
                hold_period,
                best,
                worst,
                best_conditions,
                worst_conditions,
                now,
                symbol,
            ))
            updated = conn.execute("SELECT * FROM stock_memory WHERE symbol = ?", (symbol,)).fetchone()
        return self._row_to_memory(dict(updated))

    @staticmethod
    def _row_to_memory(row: Dict) -> Dict:
        row['best_entry_conditions'] = _loads(row.get('best_entry_conditions'))
        row['worst_entry_conditions'] = _loads(row.get('worst_entry_conditions'))
        total = row.get('total_recommendations') or 0
        row['success_rate'] = (row.get('successful_recommendations') or 0) / total if total else None
        return row

    def _get_stock_memory(self, symbol: str) -> Optional[Dict]:
        row = self.query_one("SELECT * FROM stock_memory WHERE symbol = ?", (symbol.upper(),))
        return self._row_to_memory(row) if row else None

    def _get_all_stock_memories(self, limit: int = 50) -> List[Dict]:
        rows = self.query("""
            SELECT * FROM stock_memory
            ORDER BY last_mention DESC
            LIMIT ?
        """, (limit,))
        return [self._row_to_memory(row) for row in rows]

    async def record_stock_mention(self, symbol: str, recommendation_type: str) -> None:
        await self._run(self._record_stock_mention, symbol, recommendation_type)

    async def record_stock_outcome(self, symbol: str, outcome_return: float, hold_days: float,
                                   outcome_type: str, entry_conditions: Optional[Dict] = None) -> Dict:
        return await self._run(self._record_stock_outcome, symbol, outcome_return, hold_days,
                               outcome_type, entry_conditions)

    async def get_stock_memory(self, symbol: str) -> Optional[Dict]:
        return await self._run(self._get_stock_memory, symbol)

    async def get_all_stock_memories(self, limit: int = 50) -> List[Dict]:
        return await self._run(self._get_all_stock_memories, limit)

    # === Market patterns ===

    @staticmethod
    def _row_to_pattern(row: Dict) -> Dict:
        row['pattern_features'] = _loads(row.get('pattern_features'), {})
        return row

    def _save_pattern(self, pattern: Dict, recommendation_ids: Iterable[int]) -> int:
        """Insert a new pattern revision and mark its observations absorbed, atomically."""
        name = pattern['pattern_name']
        now = self._now().isoformat()
        with self._get_transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT MAX(revision) AS revision FROM market_patterns WHERE pattern_name = ?", (name,)
            ).fetchone()
            revision = (row['revision'] or 0) + 1
            conn.execute("""
                INSERT INTO market_patterns
                    (pattern_name, revision, pattern_type, pattern_features, occurrences, successful_outcomes,
                     success_rate, avg_return, avg_hold_period, confidence_score, first_observed, last_observed,
                     created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                name,
                revision,
                pattern['pattern_type'],
                _dumps(pattern['pattern_features']),
                pattern['occurrences'],
                pattern['successful_outcomes'],
                pattern['success_rate'],
                pattern['avg_return'],
                pattern['avg_hold_period'],
                pattern['confidence_score'],
                pattern.get('first_observed'),
                pattern.get('last_observed'),
                now,
            ))
            conn.executemany("""
                INSERT OR IGNORE INTO pattern_observations (pattern_name, recommendation_id, absorbed_at)
                VALUES (?, ?, ?)
            """, [(name, rec_id, now) for rec_id in recommendation_ids])
        return revision

    def _get_patterns(self) -> List[Dict]:
        rows = self.query("""
            SELECT p.* FROM market_patterns p
            JOIN (
                SELECT pattern_name, MAX(revision) AS revision
                FROM market_patterns
                GROUP BY pattern_name
            ) latest ON latest.pattern_name = p.pattern_name AND latest.revision = p.revision
            ORDER BY p.confidence_score DESC
        """)
        return [self._row_to_pattern(row) for row in rows]

    def _get_pattern_history(self, pattern_name: str) -> List[Dict]:
        rows = self.query("""
            SELECT * FROM market_patterns WHERE pattern_name = ? ORDER BY revision ASC
        """, (pattern_name,))
        return [self._row_to_pattern(row) for row in rows]

    def _get_absorbed_recommendation_ids(self) -> Set[int]:
        return {row['recommendation_id'] for row in self.query("SELECT recommendation_id FROM pattern_observations")}

    async def save_pattern(self, pattern: Dict, recommendation_ids: Iterable[int]) -> int:
        return await self._run(self._save_pattern, pattern, list(recommendation_ids))

    async def get_patterns(self) -> List[Dict]:
        return await self._run(self._get_patterns)

    async def get_pattern_history(self, pattern_name: str) -> List[Dict]:
        return await self._run(self._get_pattern_history, pattern_name)

    async def get_absorbed_recommendation_ids(self) -> Set[int]:
        return await self._run(self._get_absorbed_recommendation_ids)

    # === Strategy parameters ===

    @staticmethod
    def _row_to_parameters(row: Dict) -> Dict:
        return {
            'parameter_set_name': row['parameter_set_name'],
            'version': row['version'],
            'weights': {col: row[col] for col in WEIGHT_COLUMNS},
            'thresholds': {col: row[col] for col in THRESHOLD_COLUMNS},
            'performance': {col: row[col] for col in PERFORMANCE_COLUMNS},
            'creation_reason': row.get('creation_reason'),
            'created_at': row['created_at'],
        }

    def _save_strategy_parameters(self, parameter_set_name: str, weights: Dict[str, float],
                                  thresholds: Dict[str, float], performance: Optional[Dict] = None,
                                  reason: Optional[str] = None) -> int:
        """Publish a new parameter version. Returns the version number assigned."""
        missing = [c for c in WEIGHT_COLUMNS if c not in weights] + [c for c in THRESHOLD_COLUMNS if c not in thresholds]
        if missing:
            raise ValueError(f"Strategy parameters missing fields: {', '.join(missing)}")
        performance = performance or {}

        with self._get_transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT MAX(version) AS version FROM strategy_parameters WHERE parameter_set_name = ?",
                (parameter_set_name,)
            ).fetchone()
            version = (row['version'] or 0) + 1
            columns = ('parameter_set_name', 'version') + WEIGHT_COLUMNS + THRESHOLD_COLUMNS + PERFORMANCE_COLUMNS + (
                'creation_reason', 'created_at')
            values = (
                [parameter_set_name, version]
                + [float(weights[c]) for c in WEIGHT_COLUMNS]
                + [float(thresholds[c]) for c in THRESHOLD_COLUMNS]
                + [performance.get(c, 0) for c in PERFORMANCE_COLUMNS]
                + [reason, self._now().isoformat()]
            )
            conn.execute(
                f"INSERT INTO strategy_parameters ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
        return version

    def _get_active_strategy_parameters(self, parameter_set_name: str) -> Optional[Dict]:
        row = self.query_one("""
            SELECT * FROM strategy_parameters
            WHERE parameter_set_name = ?
            ORDER BY version DESC
            LIMIT 1
        """, (parameter_set_name,), raise_errors=True)
        return self._row_to_parameters(row) if row else None

    def _get_strategy_parameters(self, parameter_set_name: str, version: int) -> Optional[Dict]:
        row = self.query_one("""
            SELECT * FROM strategy_parameters WHERE parameter_set_name = ? AND version = ?
        """, (parameter_set_name, version))
        return self._row_to_parameters(row) if row else None

    def _get_parameter_history(self, parameter_set_name: str, limit: int = 10) -> List[Dict]:
        rows = self.query("""
            SELECT * FROM strategy_parameters
            WHERE parameter_set_name = ?
            ORDER BY version DESC
            LIMIT ?
        """, (parameter_set_name, limit))
        return [self._row_to_parameters(row) for row in rows]

    async def save_strategy_parameters(self, parameter_set_name: str, weights: Dict[str, float],
                                       thresholds: Dict[str, float], performance: Optional[Dict] = None,
                                       reason: Optional[str] = None) -> int:
        return await self._run(self._save_strategy_parameters, parameter_set_name, weights, thresholds,
                               performance, reason)

    async def get_active_strategy_parameters(self, parameter_set_name: str) -> Optional[Dict]:
        return await self._run(self._get_active_strategy_parameters, parameter_set_name)

    async def get_strategy_parameters(self, parameter_set_name: str, version: int) -> Optional[Dict]:
        return await self._run(self._get_strategy_parameters, parameter_set_name, version)

    async def get_parameter_history(self, parameter_set_name: str, limit: int = 10) -> List[Dict]:
        return await self._run(self._get_parameter_history, parameter_set_name, limit)

    # === Optimization reports ===

    def _save_optimization_report(self, report: Dict, keep: int = 20) -> int:
        with self._get_transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO optimization_reports (status, report, created_at) VALUES (?, ?, ?)
            """, (report.get('status', 'completed'), _dumps(report), self._now().isoformat()))
            report_id = cursor.lastrowid
            conn.execute("""
                DELETE FROM optimization_reports
                WHERE id NOT IN (SELECT id FROM optimization_reports ORDER BY id DESC LIMIT ?)
            """, (keep,))
        return report_id

    def _get_optimization_reports(self, limit: int = 20) -> List[Dict]:
        rows = self.query("""
            SELECT report FROM optimization_reports ORDER BY id DESC LIMIT ?
        """, (limit,))
        reports = [_loads(row['report'], {}) for row in rows]
        reports.reverse()
        return reports

    async def save_optimization_report(self, report: Dict, keep: int = 20) -> int:
        return await self._run(self._save_optimization_report, report, keep)

    async def get_optimization_reports(self, limit: int = 20) -> List[Dict]:
        return await self._run(self._get_optimization_reports, limit)

    # === Context building ===

    async def build_conversation_context(self, session_id: Optional[str] = None) -> Dict:
        """Collect recent conversation, recommendations and symbol memory for a chat prompt."""
        recent_conversations = await self.get_conversation_history(session_id, 20)
        relevant_recommendations = await self.get_recent_recommendations(days=7, limit=20)
        stock_memories = await self.get_all_stock_memories(limit=20)
        performance_metrics = await self.get_recommendation_performance(days=30)
        return {
            'recent_conversations': recent_conversations,
            'relevant_recommendations': relevant_recommendations,
            'stock_memories': stock_memories,
            'performance_metrics': performance_metrics,
        }

    async def generate_learning_insights(self) -> Dict:
        memories = await self.get_all_stock_memories(limit=100)
        evaluated = [m for m in memories if (m.get('total_recommendations') or 0) > 0]
        by_return = sorted(evaluated, key=lambda m: m['avg_recommendation_return'] or 0.0, reverse=True)

        recent = await self.get_recent_recommendations(days=30)
        type_counts: Dict[str, int] = {}
        for rec in recent:
            type_counts[rec['type']] = type_counts.get(rec['type'], 0) + 1

        return {
            'top_performing_stocks': by_return[:5],
            'worst_performing_stocks': list(reversed(by_return[-5:])) if by_return else [],
            'recent_performance': await self.get_recommendation_performance(days=30),
            'recommendation_patterns': type_counts,
        }
