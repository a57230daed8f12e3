#!/usr/bin/env python3
"""
Learning Engine - Main Entry Point
Runs the JSON API together with the outcome sweep and optimization scheduler.
"""
import sys

from core.config import DB_PATH, WEB_HOST, WEB_PORT
from core.database import MemoryStore
from logging_config import get_logger, setup_logging


def print_banner():
    print("""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   Learning & Adaptive Recommendation Engine                  ║
║   ─────────────────────────────────────────────────────────  ║
║   Outcome tracking, pattern learning, strategy tuning        ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
    """)


def main():
    print_banner()

    # Settings live in the same database the engine learns into
    store = MemoryStore(DB_PATH)
    dev_mode = bool(store.get_setting('development_mode'))
    auto_start = store.get_setting('auto_start_scheduler')
    store.close()

    setup_logging(dev_mode=dev_mode or None)
    logger = get_logger(__name__)

    print("Status Check:")
    print(f"   ├─ Database: {DB_PATH}")
    print(f"   └─ Scheduler: {'auto-start' if auto_start else 'disabled'}")
    print()
    print(f"Starting API on http://{WEB_HOST}:{WEB_PORT}")
    print("=" * 60)
    print("   Press Ctrl+C to stop")
    print("=" * 60)

    import uvicorn
    from app import create_app

    try:
        uvicorn.run(
            create_app(start_scheduler=bool(auto_start)),
            host=WEB_HOST,
            port=WEB_PORT,
            log_level="debug" if dev_mode else "warning",
        )
    except KeyboardInterrupt:
        pass
    logger.info("Learning engine stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
