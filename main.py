"""
Wellness Coach - FastAPI Server
===============================

Thin HTTP surface over the coach services:
- Fasting session commands and status
- Activity logging (meals, exercise, sleep)
- Behavior snapshots
- Advice generation, feedback and interaction flags
- Proactive evaluation on app-open

State-machine errors map to 409, missing documents to 404 and store
failures to 503. Advice endpoints never fail because of the generation
backend; they return degraded advice instead.
"""
import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import settings
from coach.advice.models import AdviceType
from coach.core.errors import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PersistenceError,
)
from coach.core.ports import ContentItem
from coach.core.types import (
    ActivityLevel,
    ExerciseRecord,
    FastingType,
    Gender,
    HealthCondition,
    HealthGoal,
    HealthProfile,
    MealRecord,
    MealType,
    SleepRecord,
    utc_now,
)
from coach.policy.content_filter import FilterSeverity
from coach.services import CoachServices, build_services

# =============================================================================
# LOGGING & OBSERVABILITY
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

USER_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,128}$')


def validate_user_id(user_id: str) -> str:
    if not USER_ID_PATTERN.match(user_id):
        raise HTTPException(status_code=400, detail="Invalid user_id format")
    return user_id


def get_services(request: Request) -> CoachServices:
    return request.app.state.services


async def verify_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token for protected endpoints"""
    if not settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access not configured")
    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


# =============================================================================
# REQUEST MODELS
# =============================================================================

class StartFastRequest(BaseModel):
    fasting_type: FastingType = FastingType.INTERMITTENT_16_8
    target_hours: Optional[float] = Field(None, gt=0, le=168)
    personal_goal: Optional[str] = Field(None, max_length=200)


class EndFastRequest(BaseModel):
    completed: bool


class ContentScreenRequest(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=128)
    title: str = Field(..., max_length=500)
    description: str = Field("", max_length=4000)
    category: str = Field("", max_length=100)
    tags: List[str] = []
    severity: Optional[FilterSeverity] = None


class MealRequest(BaseModel):
    calories: float = Field(..., ge=0, le=10000)
    protein_g: float = Field(0.0, ge=0)
    carbs_g: float = Field(0.0, ge=0)
    fat_g: float = Field(0.0, ge=0)
    meal_type: MealType = MealType.SNACK
    timestamp: Optional[datetime] = None
    supersedes: Optional[str] = Field(None, max_length=64)


class ExerciseRequest(BaseModel):
    duration_minutes: float = Field(..., gt=0, le=1440)
    activity: str = Field("general", max_length=100)
    timestamp: Optional[datetime] = None


class SleepRequest(BaseModel):
    duration_hours: float = Field(..., gt=0, le=24)
    quality: float = Field(..., ge=0, le=1)
    timestamp: Optional[datetime] = None


class ProfileRequest(BaseModel):
    age: Optional[int] = Field(None, ge=13, le=120)
    gender: Optional[Gender] = None
    height_cm: Optional[float] = Field(None, gt=0, le=300)
    weight_kg: Optional[float] = Field(None, gt=0, le=500)
    target_weight_kg: Optional[float] = Field(None, gt=0, le=500)
    activity_level: ActivityLevel = ActivityLevel.SEDENTARY
    goals: List[HealthGoal] = []
    dietary_preferences: List[str] = []
    health_conditions: List[HealthCondition] = []
    allergies: List[str] = []
    medications: List[str] = []
    receive_advice: bool = True
    dismissed_advice_types: List[AdviceType] = []
    time_zone: Optional[str] = Field(None, max_length=64)

    @field_validator('time_zone')
    @classmethod
    def validate_time_zone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v


class AdviceRequest(BaseModel):
    query: Optional[str] = Field(None, max_length=1000)
    advice_type: Optional[AdviceType] = None

    @field_validator('query')
    @classmethod
    def validate_query(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class BookmarkRequest(BaseModel):
    bookmarked: bool = True


def _timestamp(value: Optional[datetime]) -> datetime:
    if value is None:
        return utc_now()
    if value.tzinfo is None:
        return value.replace(tzinfo=utc_now().tzinfo)
    return value


# =============================================================================
# ENDPOINTS
# =============================================================================

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Wellness Coach",
        "version": "1.0.0",
        "model": settings.generation_model,
        "status": "running",
    }


@router.get("/health")
async def health(services: CoachServices = Depends(get_services)):
    """Health check endpoint"""
    db_status = await services.db_manager.ping() if services.db_manager else True
    return {
        "status": "healthy" if db_status else "degraded",
        "database": "connected" if db_status else "disconnected",
        "scheduler": bool(services.scheduler and services.scheduler.is_running),
        "background_tasks": len(services.tasks),
    }


# -----------------------------------------------------------------------------
# Fasting
# -----------------------------------------------------------------------------

@router.post("/users/{user_id}/fasting/start")
async def start_fast(
    user_id: str,
    body: StartFastRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    target = timedelta(hours=body.target_hours) if body.target_hours else None
    status = await services.state_machine.start(
        user_id, body.fasting_type, target_duration=target, personal_goal=body.personal_goal
    )
    return status.to_dict()


@router.post("/users/{user_id}/fasting/pause")
async def pause_fast(user_id: str, services: CoachServices = Depends(get_services)):
    validate_user_id(user_id)
    return (await services.state_machine.pause(user_id)).to_dict()


@router.post("/users/{user_id}/fasting/resume")
async def resume_fast(user_id: str, services: CoachServices = Depends(get_services)):
    validate_user_id(user_id)
    return (await services.state_machine.resume(user_id)).to_dict()


@router.post("/users/{user_id}/fasting/end")
async def end_fast(
    user_id: str,
    body: EndFastRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    return (await services.state_machine.end(user_id, completed=body.completed)).to_dict()


@router.get("/users/{user_id}/fasting/status")
async def fasting_status(user_id: str, services: CoachServices = Depends(get_services)):
    validate_user_id(user_id)
    return (await services.state_machine.status(user_id)).to_dict()


@router.get("/users/{user_id}/fasting/history")
async def fasting_history(
    user_id: str,
    limit: int = 20,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    sessions = await services.state_machine.history(user_id, limit=min(max(limit, 1), 100))
    return {"user_id": user_id, "sessions": [s.to_dict() for s in sessions]}


@router.post("/users/{user_id}/content/screen")
async def screen_content(
    user_id: str,
    body: ContentScreenRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    item = ContentItem(
        item_id=body.item_id,
        title=body.title,
        description=body.description,
        category=body.category,
        tags=tuple(body.tags),
    )
    decision = await services.state_machine.screen_content(user_id, item, body.severity)
    return decision.to_dict()


# -----------------------------------------------------------------------------
# Profile & activity
# -----------------------------------------------------------------------------

@router.put("/users/{user_id}/profile")
async def put_profile(
    user_id: str,
    body: ProfileRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    fields = body.model_dump(exclude={"dismissed_advice_types"})
    form = HealthProfile(
        user_id=user_id,
        dismissed_advice_types=[t.value for t in body.dismissed_advice_types],
        **fields,
    ).to_dict()
    # Only form fields are written; feedback and insights are owned by the coach
    updates = {key: form[key] for key in (*fields, "dismissed_advice_types")}
    saved = await services.profiles.update(user_id, updates)
    return {**saved.to_dict(), "bmi": saved.bmi, "tdee": saved.tdee}


@router.post("/users/{user_id}/meals")
async def log_meal(
    user_id: str,
    body: MealRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    record = MealRecord(
        id=uuid.uuid4().hex,
        user_id=user_id,
        timestamp=_timestamp(body.timestamp),
        calories=body.calories,
        protein_g=body.protein_g,
        carbs_g=body.carbs_g,
        fat_g=body.fat_g,
        meal_type=body.meal_type,
        supersedes=body.supersedes,
    )
    await services.activity_log.append(record)
    return record.to_dict()


@router.post("/users/{user_id}/exercise")
async def log_exercise(
    user_id: str,
    body: ExerciseRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    record = ExerciseRecord(
        id=uuid.uuid4().hex,
        user_id=user_id,
        timestamp=_timestamp(body.timestamp),
        duration_minutes=body.duration_minutes,
        activity=body.activity,
    )
    await services.activity_log.append(record)
    return record.to_dict()


@router.post("/users/{user_id}/sleep")
async def log_sleep(
    user_id: str,
    body: SleepRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    record = SleepRecord(
        id=uuid.uuid4().hex,
        user_id=user_id,
        timestamp=_timestamp(body.timestamp),
        duration_hours=body.duration_hours,
        quality=body.quality,
    )
    await services.activity_log.append(record)
    return record.to_dict()


@router.get("/users/{user_id}/behavior")
async def behavior(
    user_id: str,
    refresh: bool = False,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    snapshot = await services.snapshots.get_snapshot(user_id, force=refresh)
    return snapshot.to_dict()


# -----------------------------------------------------------------------------
# Advice
# -----------------------------------------------------------------------------

@router.post("/users/{user_id}/advice")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_advice(
    request: Request,
    user_id: str,
    body: AdviceRequest,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    record = await services.request_advice(user_id, query=body.query, advice_type=body.advice_type)
    return record.to_dict()


@router.get("/users/{user_id}/advice")
async def list_advice(
    user_id: str,
    include_dismissed: bool = False,
    limit: int = 20,
    services: CoachServices = Depends(get_services),
):
    validate_user_id(user_id)
    records = await services.advice.list_for_user(
        user_id, include_dismissed=include_dismissed, limit=min(max(limit, 1), 100)
    )
    return {"user_id": user_id, "advice": [r.to_dict() for r in records]}


@router.post("/advice/{advice_id}/feedback")
async def advice_feedback(
    advice_id: str,
    body: FeedbackRequest,
    services: CoachServices = Depends(get_services),
):
    record = await services.feedback.record_feedback(advice_id, body.rating, body.comment)
    return record.to_dict()


@router.post("/advice/{advice_id}/read")
async def advice_read(advice_id: str, services: CoachServices = Depends(get_services)):
    return (await services.advice.mark_read(advice_id)).to_dict()


@router.post("/advice/{advice_id}/bookmark")
async def advice_bookmark(
    advice_id: str,
    body: BookmarkRequest,
    services: CoachServices = Depends(get_services),
):
    return (await services.advice.set_bookmarked(advice_id, body.bookmarked)).to_dict()


@router.post("/advice/{advice_id}/dismiss")
async def advice_dismiss(advice_id: str, services: CoachServices = Depends(get_services)):
    return (await services.advice.dismiss(advice_id)).to_dict()


@router.post("/users/{user_id}/insights/refresh")
async def refresh_insights(user_id: str, services: CoachServices = Depends(get_services)):
    validate_user_id(user_id)
    insights = await services.feedback.improve_recommendations(user_id)
    return insights.to_dict()


@router.post("/users/{user_id}/app-open", status_code=202)
async def app_open(user_id: str, services: CoachServices = Depends(get_services)):
    """Kick off a proactive evaluation without waiting for it."""
    validate_user_id(user_id)
    services.proactive.on_app_open(user_id)
    return {"user_id": user_id, "status": "scheduled"}


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------

@router.post("/admin/proactive/scan")
async def admin_proactive_scan(
    authorized: bool = Depends(verify_admin_token),
    services: CoachServices = Depends(get_services),
):
    created = await services.proactive.scan_all()
    return {"advice_created": created}


@router.get("/admin/circuits")
async def admin_circuits(
    authorized: bool = Depends(verify_admin_token),
    services: CoachServices = Depends(get_services),
):
    return {
        "retrieval": services.generator.retrieval_breaker.get_metrics(),
        "generation": services.generator.generation_breaker.get_metrics(),
    }


# =============================================================================
# ERROR MAPPING
# =============================================================================

async def _conflict_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": "conflict", "detail": str(exc)})


async def _invalid_transition_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=409, content={"error": "invalid_transition", "detail": str(exc)}
    )


async def _not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})


async def _persistence_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"❌ Persistence failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503, content={"error": "storage_unavailable", "detail": "Please retry"}
    )


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(services: Optional[CoachServices] = None) -> FastAPI:
    """Build the app; pass ``services`` to skip production wiring (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        logger.info("Starting Wellness Coach server...")
        if app.state.services is None:
            if not settings.mongodb_uri:
                raise RuntimeError("MONGODB_URI is required")
            app.state.services = await build_services(settings)
        await app.state.services.start()

        yield

        logger.info("Shutting down...")
        await app.state.services.stop()

    app = FastAPI(
        title="Wellness Coach",
        description="Fasting sessions, behavior analytics and personalized advice",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS - Security: Validate configuration
    cors_origins = settings.allowed_origins.split(",")
    if "*" in cors_origins and not settings.debug:
        logger.warning(
            "⚠️ SECURITY: CORS allows all origins (*) in production mode! "
            "Set ALLOWED_ORIGINS env var to restrict access."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ConflictError, _conflict_handler)
    app.add_exception_handler(InvalidStateTransitionError, _invalid_transition_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)
    app.add_exception_handler(PersistenceError, _persistence_handler)

    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=int(os.environ.get("PORT", settings.port)),
        reload=settings.debug
    )
