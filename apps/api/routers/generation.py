"""Course and presentation generation router."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from generation.client import GenerationService, GenerationUnavailableError, Sleep, build_generation_service
from generation.images import ImageSearchService, build_image_search
from generation.models import ArtifactKind, Difficulty, GenerationJob
from generation.saga import GenerationSagaError, InsufficientCreditsError
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import ProfileNotFound
from services.generation import (
    build_course_job,
    build_presentation_job,
    read_source_document,
    run_generation_job,
)
from services.plans import get_plan_limits
from services.pricing import quote_course, quote_presentation

router = APIRouter()
logger = logging.getLogger(__name__)


class CourseGenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    chapters: int = Field(ge=1, le=50)
    lessons_per_chapter: int = Field(ge=1, le=50)
    difficulty: Difficulty = "beginner"
    include_images: bool = False
    user_id: Optional[str] = None


class PresentationColors(BaseModel):
    background_color: Optional[str] = Field(default=None, max_length=32)
    text_color: Optional[str] = Field(default=None, max_length=32)
    accent_color: Optional[str] = Field(default=None, max_length=32)


class PresentationGenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    slides: int = Field(default=10, ge=1, le=200)
    difficulty: Difficulty = "beginner"
    theme: str = Field(default="default", max_length=64)
    colors: Optional[PresentationColors] = None
    include_images: bool = False
    user_id: Optional[str] = None


def get_generation_service() -> GenerationService:
    try:
        return build_generation_service()
    except GenerationUnavailableError as exc:
        raise HTTPException(status_code=503, detail=f"Generation provider unavailable: {exc}") from exc


def get_image_search() -> Optional[ImageSearchService]:
    return build_image_search()


def get_generation_sleep() -> Sleep:
    return asyncio.sleep


async def _ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


def _saga_failure_response(exc: GenerationSagaError) -> JSONResponse:
    content = {
        "error": exc.error_code,
        "message": str(exc),
        "credits_refunded": bool(exc.credits_refunded),
    }
    if isinstance(exc, InsufficientCreditsError):
        status_code = 402
        content.update({"required": exc.required, "available": exc.available})
    elif exc.error_code == "outline_failed":
        status_code = 502
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=content)


async def _run(
    job: GenerationJob,
    db: AsyncSession,
    service: GenerationService,
    image_search: Optional[ImageSearchService],
    sleep: Sleep,
):
    if job.include_images and image_search is None:
        raise HTTPException(status_code=400, detail="Image add-on is not available: no image provider configured.")

    try:
        result = await run_generation_job(job, db, service=service, image_search=image_search, sleep=sleep)
    except GenerationSagaError as exc:
        logger.warning("Generation job %s failed: %s", job.job_id, exc)
        return _saga_failure_response(exc)
    except ProfileNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return result.as_dict()


@router.get("/limits")
async def generation_limits(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id)
    limits = await get_plan_limits(scoped_user_id, db)
    return {"plan_limits": limits.as_dict()}


@router.get("/quote")
async def generation_quote(
    kind: ArtifactKind = Query(default="course"),
    chapters: int = Query(default=settings.DEFAULT_MAX_CHAPTERS, ge=1, le=50),
    lessons_per_chapter: int = Query(default=settings.DEFAULT_MAX_LESSONS_PER_CHAPTER, ge=1, le=50),
    slides: int = Query(default=10, ge=1, le=200),
    include_images: bool = Query(default=False),
):
    if kind == "course":
        quote = quote_course(chapters, lessons_per_chapter, include_images)
    else:
        quote = quote_presentation(slides, include_images)
    return {"kind": kind, **quote.as_dict()}


@router.post("/course")
async def generate_course(
    request: CourseGenerateRequest,
    _rate_limit: None = Depends(rate_limit("generation_course", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: GenerationService = Depends(get_generation_service),
    image_search: Optional[ImageSearchService] = Depends(get_image_search),
    sleep: Sleep = Depends(get_generation_sleep),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id)
    job = await build_course_job(
        scoped_user_id,
        db,
        chapters=request.chapters,
        lessons_per_chapter=request.lessons_per_chapter,
        difficulty=request.difficulty,
        include_images=request.include_images,
        prompt=request.prompt,
    )
    return await _run(job, db, service, image_search, sleep)


@router.post("/course/document")
async def generate_course_from_document(
    file: UploadFile = File(...),
    chapters: int = Form(..., ge=1, le=50),
    lessons_per_chapter: int = Form(..., ge=1, le=50),
    difficulty: Difficulty = Form(default="beginner"),
    include_images: bool = Form(default=False),
    user_id: Optional[str] = Form(default=None),
    _rate_limit: None = Depends(rate_limit("generation_course_document", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: GenerationService = Depends(get_generation_service),
    image_search: Optional[ImageSearchService] = Depends(get_image_search),
    sleep: Sleep = Depends(get_generation_sleep),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id)
    document = await read_source_document(file, excerpt_chars=settings.COURSE_DOCUMENT_EXCERPT_CHARS)
    job = await build_course_job(
        scoped_user_id,
        db,
        chapters=chapters,
        lessons_per_chapter=lessons_per_chapter,
        difficulty=difficulty,
        include_images=include_images,
        document=document,
    )
    return await _run(job, db, service, image_search, sleep)


@router.post("/presentation")
async def generate_presentation(
    request: PresentationGenerateRequest,
    _rate_limit: None = Depends(rate_limit("generation_presentation", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: GenerationService = Depends(get_generation_service),
    image_search: Optional[ImageSearchService] = Depends(get_image_search),
    sleep: Sleep = Depends(get_generation_sleep),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id)
    job = await build_presentation_job(
        scoped_user_id,
        db,
        slides=request.slides,
        difficulty=request.difficulty,
        include_images=request.include_images,
        prompt=request.prompt,
        theme=request.theme,
        colors=request.colors.model_dump() if request.colors else None,
    )
    return await _run(job, db, service, image_search, sleep)


@router.post("/presentation/document")
async def generate_presentation_from_document(
    file: UploadFile = File(...),
    slides: int = Form(default=10, ge=1, le=200),
    difficulty: Difficulty = Form(default="beginner"),
    theme: str = Form(default="default", max_length=64),
    include_images: bool = Form(default=False),
    user_id: Optional[str] = Form(default=None),
    _rate_limit: None = Depends(rate_limit("generation_presentation_document", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: GenerationService = Depends(get_generation_service),
    image_search: Optional[ImageSearchService] = Depends(get_image_search),
    sleep: Sleep = Depends(get_generation_sleep),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id)
    document = await read_source_document(file, excerpt_chars=settings.PRESENTATION_DOCUMENT_EXCERPT_CHARS)
    job = await build_presentation_job(
        scoped_user_id,
        db,
        slides=slides,
        difficulty=difficulty,
        include_images=include_images,
        document=document,
        theme=theme,
    )
    return await _run(job, db, service, image_search, sleep)
