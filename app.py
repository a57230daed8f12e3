"""
FastAPI service for the Learning Engine
JSON endpoints over the LearningManager: status, chat ingestion, scoring,
outcome tracking, patterns and optimization.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from engine.learning_manager import LearningManager, build_learning_context
from scheduler import LearningScheduler

logger = logging.getLogger(__name__)


class MessageIn(BaseModel):
    message: str
    message_type: str = "assistant"
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ScoreIn(BaseModel):
    symbol: str
    metrics: Dict[str, Any]


def create_app(manager: Optional[LearningManager] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the app. A pre-built manager is used as-is; otherwise one is created on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_manager = manager is None
        learning = manager or LearningManager(build_learning_context())
        await learning.initialize()
        app.state.learning = learning

        scheduler = None
        if start_scheduler:
            scheduler = await LearningScheduler.from_store(learning)
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler:
                scheduler.stop()
            if owns_manager:
                learning.close()

    app = FastAPI(title="Learning Engine", version="1.0.0", lifespan=lifespan)

    def get_manager(request: Request) -> LearningManager:
        return request.app.state.learning

    @app.get("/api/learning/status")
    async def api_learning_status(learning: LearningManager = Depends(get_manager)):
        """Snapshot of every learning component"""
        return await learning.get_learning_status()

    @app.post("/api/learning/optimize")
    async def api_force_optimization(learning: LearningManager = Depends(get_manager)):
        """Run an optimization pass now (still subject to the sample-size gate)"""
        try:
            return await learning.force_optimization()
        except Exception as e:
            logger.error(f"Forced optimization failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/learning/messages")
    async def api_save_message(payload: MessageIn, learning: LearningManager = Depends(get_manager)):
        """Store a chat message and extract recommendations from assistant replies"""
        try:
            saved = await learning.save_conversation_with_insights(
                payload.message,
                message_type=payload.message_type,
                session_id=payload.session_id,
                metadata=payload.metadata,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error(f"Failed to save message: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))
        return {"saved": len(saved), "recommendations": saved}

    @app.post("/api/learning/score")
    async def api_enhanced_score(payload: ScoreIn, learning: LearningManager = Depends(get_manager)):
        try:
            return await learning.calculate_enhanced_score(payload.metrics, payload.symbol)
        except Exception as e:
            logger.error(f"Scoring failed for {payload.symbol}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/learning/tracking")
    async def api_active_tracking(learning: LearningManager = Depends(get_manager)):
        tracker = learning.context.tracker
        return {"active": tracker.get_active_tracking(), "count": tracker.active_count}

    @app.post("/api/learning/tracking/{recommendation_id}/close")
    async def api_close_tracking(recommendation_id: int, learning: LearningManager = Depends(get_manager)):
        """Force-close an open recommendation; closing twice is harmless"""
        try:
            outcome = await learning.force_close_tracking(recommendation_id)
        except Exception as e:
            logger.error(f"Failed to close recommendation {recommendation_id}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))
        return {"closed": outcome is not None, "outcome": outcome}

    @app.get("/api/learning/patterns")
    async def api_patterns(learning: LearningManager = Depends(get_manager)):
        return learning.context.patterns.get_pattern_summary()

    @app.get("/api/learning/parameters")
    async def api_parameters(learning: LearningManager = Depends(get_manager)):
        scorer = learning.context.scorer
        return {
            "current": scorer.current_parameters.to_dict(),
            "history": await scorer.get_parameter_history(),
        }

    @app.get("/api/learning/scheduler")
    async def api_scheduler_status(request: Request):
        scheduler = request.app.state.scheduler
        if scheduler is None:
            return {"is_running": False}
        return scheduler.get_status()

    return app
