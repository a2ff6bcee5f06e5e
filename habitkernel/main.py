import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from habitkernel.config import settings
from habitkernel.db import build_store
from habitkernel.exception_handlers import register_exception_handlers
from habitkernel.kernel.nudge_router import router as nudge_router
from habitkernel.kernel.router import router as kernel_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    store, engine = await build_store()
    app.state.store = store
    logger.info("Store ready backend=%s", settings.store_backend)
    try:
        yield
    finally:
        if engine is not None:
            await engine.dispose()


app = FastAPI(title="HabitKernel", version="0.1.0", lifespan=lifespan)
register_exception_handlers(app)
app.include_router(kernel_router)
app.include_router(nudge_router)


@app.get("/")
async def root() -> dict:
    return {
        "status": "ok",
        "docs": "/docs",
        "health": "/health",
        "kernel": {
            "goals": "/kernel/goals",
            "goal_detail": "/kernel/goals/{id}",
            "goal_status": "/kernel/goals/{id}/status",
            "goal_status_refresh": "/kernel/goals/{id}/status/refresh",
            "goal_recurrence": "/kernel/goals/{id}/recurrence",
            "completions": "/kernel/goals/{id}/completions",
            "streak": "/kernel/goals/{id}/streak",
            "streak_check": "/kernel/goals/{id}/streak/check",
            "streak_freeze": "/kernel/goals/{id}/streak/freeze",
            "milestone_celebrate": "/kernel/goals/{id}/milestones/{days}/celebrate",
            "calendar": "/kernel/goals/{id}/calendar",
            "scores": "/kernel/scores",
            "nudges": "/kernel/nudges",
            "nudge_cooldowns": "/kernel/nudges/cooldowns",
        },
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
