"""FastAPI server for Gatekeeper."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from gatekeeper import (
    __version__,
    ConcurrencyController,
    CostTracker,
    RateLimiter,
    MetricsCollector,
    InMemoryUsageStore,
    SQLiteUsageStore,
    Timeframe,
    ValidationError,
)
from gatekeeper.validation import MIN_CONCURRENCY, MAX_CONCURRENCY

HEALTHY_FAILURE_RATE = 0.1


def _usage_store():
    db_path = os.getenv("GATEKEEPER_DB_PATH")
    if db_path:
        return SQLiteUsageStore(db_path=db_path)
    return InMemoryUsageStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.metrics = MetricsCollector()
    app.state.controller = ConcurrencyController(metrics=app.state.metrics)
    app.state.rate_limiter = RateLimiter()
    app.state.cost_tracker = CostTracker(storage=_usage_store())

    app.state.controller.start()
    app.state.rate_limiter.start_cleanup()
    try:
        yield
    finally:
        await app.state.rate_limiter.stop_cleanup()
        await app.state.controller.shutdown()


app = FastAPI(title="Gatekeeper API", version=__version__, lifespan=lifespan)


class ConcurrencyRequest(BaseModel):
    max_concurrent_requests: int = Field(..., ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)


class RateLimitCheckRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)


class UsageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    operation: str = "general"
    request_id: Optional[str] = None


class BudgetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    daily_limit: float = Field(..., ge=0)
    monthly_limit: float = Field(..., ge=0)
    alert_threshold: float = Field(80.0, gt=0, le=100)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/concurrency-stats")
async def concurrency_stats(request: Request) -> Dict[str, Any]:
    return asdict(request.app.state.controller.get_stats())


@app.post("/llm/adjust-concurrency")
async def adjust_concurrency(req: ConcurrencyRequest, request: Request) -> Dict[str, Any]:
    controller = request.app.state.controller
    try:
        controller.adjust_concurrency(req.max_concurrent_requests)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "success": True,
        "max_concurrent_requests": controller.max_concurrent_requests,
    }


@app.get("/llm/health")
async def llm_health(request: Request) -> Dict[str, Any]:
    stats = request.app.state.controller.get_stats()
    finished = stats.completed + stats.failed
    failure_rate = stats.failed / finished if finished else 0.0
    return {
        "healthy": failure_rate < HEALTHY_FAILURE_RATE,
        "failure_rate": failure_rate,
        "active": stats.active,
        "queued": stats.queued,
        "avg_processing_time_ms": stats.avg_processing_time_ms,
    }


@app.post("/rate-limit/check")
def rate_limit_check(req: RateLimitCheckRequest, request: Request) -> Dict[str, Any]:
    result = request.app.state.rate_limiter.check_limit(req.user_id, req.model)
    return asdict(result)


@app.get("/rate-limit/{user_id}")
def rate_limit_usage(user_id: str, request: Request) -> Dict[str, Any]:
    return request.app.state.rate_limiter.get_usage_stats(user_id)


@app.post("/usage")
def track_usage(req: UsageRequest, request: Request) -> Dict[str, Any]:
    try:
        result = request.app.state.cost_tracker.track_usage(
            req.user_id,
            req.model,
            req.input_tokens,
            req.output_tokens,
            req.operation,
            request_id=req.request_id,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(result)


@app.post("/budgets")
def set_budget(req: BudgetRequest, request: Request) -> Dict[str, Any]:
    try:
        limits = request.app.state.cost_tracker.set_budget_limits(
            req.user_id,
            daily_limit=req.daily_limit,
            monthly_limit=req.monthly_limit,
            alert_threshold=req.alert_threshold,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(limits)


@app.get("/budgets/{user_id}")
def get_budget(user_id: str, request: Request) -> Dict[str, Any]:
    limits = request.app.state.cost_tracker.get_budget_limits(user_id)
    if not limits:
        raise HTTPException(status_code=404, detail="Budget not found")
    return asdict(limits)


@app.delete("/budgets/{user_id}")
def remove_budget(user_id: str, request: Request) -> Dict[str, Any]:
    removed = request.app.state.cost_tracker.remove_budget_limits(user_id)
    return {"removed": removed}


@app.get("/costs/system")
def system_costs(request: Request) -> Dict[str, Any]:
    return asdict(request.app.state.cost_tracker.get_system_stats())


@app.get("/costs/{user_id}")
def user_costs(user_id: str, request: Request, timeframe: Timeframe = Timeframe.MONTH) -> Dict[str, Any]:
    return asdict(request.app.state.cost_tracker.get_cost_stats(user_id, timeframe))


@app.get("/costs/{user_id}/optimization")
def user_optimization(user_id: str, request: Request) -> Dict[str, Any]:
    return asdict(request.app.state.cost_tracker.generate_optimization_report(user_id))
