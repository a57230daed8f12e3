import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).parent.parent  # Project root (parent of core/)
DATA_DIR = Path(__file__).parent / "data"  # Keep data in core/data

# Ensure data directory exists
DATA_DIR.mkdir(exist_ok=True)

# Load .env if exists
load_dotenv(BASE_DIR / ".env")

# Database
DB_PATH = Path(os.getenv("LEARNING_DB_PATH", str(DATA_DIR / "learning_memory.db")))

# Default Settings (can be overridden in DB)
DEFAULT_SETTINGS = {
    # Scheduler
    "outcome_check_interval_minutes": 60,
    "optimization_check_interval_hours": 24,
    "auto_start_scheduler": True,
    "timezone": "US/Eastern",

    # Diagnostics
    "development_mode": False,
}

# Web Server
WEB_HOST = os.getenv("WEB_HOST", "127.0.0.1")
WEB_PORT = int(os.getenv("WEB_PORT", "8000"))

# Squeeze scoring model
SCORING_CONFIG = {
    "default_weights": {
        "short_interest": 0.25,
        "days_to_cover": 0.20,
        "borrow_rate": 0.15,
        "volume": 0.15,
        "float": 0.10,
        "price_action": 0.10,
        "sentiment": 0.05,
    },
    "default_thresholds": {
        "min_short_interest": 8.0,
        "min_days_to_cover": 1.0,
        "min_borrow_rate": 0.0,
        "min_volume_ratio": 1.2,
        "min_score_threshold": 40.0,
    },
    # (min, max) used for linear scaling of the primary metrics
    "metric_ranges": {
        "short_interest": (0.0, 100.0),
        "days_to_cover": (0.0, 10.0),
        "borrow_rate": (0.0, 200.0),
        "volume_ratio": (0.0, 10.0),
    },
    # (upper bound, score) tiers for float size, first match wins
    "float_tiers": [
        (50_000_000, 1.0),
        (100_000_000, 0.8),
        (500_000_000, 0.6),
    ],
    "large_float_score": 0.2,
    "parameter_set_name": "squeeze_default",
    "learning_rate": 0.1,
    "min_samples_for_optimization": 20,
    "optimization_lookback_days": 90,
    "min_improvement_to_adopt": 0.05,
    "confidence_full_samples": 30,
    "max_confidence": 0.8,
    "weight_caps": {
        "short_interest": 0.4,
        "days_to_cover": 0.3,
        "volume": 0.3,
    },
    # threshold -> (metric, lower clamp, upper clamp)
    "threshold_bands": {
        "min_short_interest": ("short_interest", 15.0, 40.0),
        "min_days_to_cover": ("days_to_cover", 2.0, 5.0),
        "min_volume_ratio": ("volume_ratio", 1.5, 3.0),
    },
    "threshold_factor": 0.8,
}

# Outcome tracking
TRACKING_CONFIG = {
    "profit_threshold": 0.05,
    "loss_threshold": -0.05,
    "significant_move": 0.10,
    "max_hold_days": 30,
    "volatility_range": 0.20,
    "restore_lookback_days": 30,
    "tracked_types": ("buy", "watch"),
}

# Pattern recognition
PATTERN_CONFIG = {
    "min_occurrences": 5,
    "min_match_score": 0.6,
    "reliable_occurrences": 20,
    "discovery_lookback_days": 90,
    "short_interest_buckets": [0, 25, 50, 75, 100],
    "days_to_cover_buckets": [0, 2, 5, 10, 20],
    "volume_ratio_buckets": [0, 1.5, 3, 5, 10],
    "match_weights": {
        "short_interest": 0.3,
        "days_to_cover": 0.25,
        "volume_ratio": 0.2,
        "price_action": 0.15,
        "market_conditions": 0.1,
    },
    # fraction of the range width tolerated outside it
    "range_tolerance": 0.2,
}

# Strategy optimization
OPTIMIZER_CONFIG = {
    "interval_days": 7,
    "min_tracked_recommendations": 15,
    "degradation_factor": 0.8,
    "history_size": 20,
    "trend_window": 3,
    "pattern_refresh_days": 30,
    "performance_window_days": 30,
    "risk_free_rate": 0.02,
}
