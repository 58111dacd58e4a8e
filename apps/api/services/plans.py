"""Per-user generation limits derived from the user's plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.plan import Plan
from models.user import User


@dataclass(frozen=True)
class PlanLimits:
    max_chapters: int
    max_lessons_per_chapter: int
    min_slides: int
    max_slides: int
    plan_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan_name or "default",
            "max_chapters": self.max_chapters,
            "max_lessons_per_chapter": self.max_lessons_per_chapter,
            "min_slides": self.min_slides,
            "max_slides": self.max_slides,
        }


def default_plan_limits() -> PlanLimits:
    return PlanLimits(
        max_chapters=max(int(settings.DEFAULT_MAX_CHAPTERS), 1),
        max_lessons_per_chapter=max(int(settings.DEFAULT_MAX_LESSONS_PER_CHAPTER), 1),
        min_slides=max(int(settings.MIN_SLIDES), 1),
        max_slides=max(int(settings.MAX_SLIDES), 1),
    )


async def get_plan_limits(user_id: str, db: AsyncSession) -> PlanLimits:
    """Limits of the user's plan, or the configured defaults when no plan is attached."""
    result = await db.execute(select(Plan).join(User, User.plan_id == Plan.id).where(User.id == user_id))
    plan = result.scalar_one_or_none()
    defaults = default_plan_limits()
    if plan is None:
        return defaults

    return PlanLimits(
        max_chapters=int(plan.max_chapters or defaults.max_chapters),
        max_lessons_per_chapter=int(plan.max_lessons_per_chapter or defaults.max_lessons_per_chapter),
        min_slides=defaults.min_slides,
        max_slides=min(int(plan.max_slides or defaults.max_slides), defaults.max_slides),
        plan_name=plan.name,
    )


def validate_course_shape(limits: PlanLimits, chapters: int, lessons_per_chapter: int) -> None:
    if chapters < 1 or chapters > limits.max_chapters:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_chapters",
                "message": f"Invalid number of chapters. Your plan allows 1-{limits.max_chapters} chapters.",
                "max_chapters": limits.max_chapters,
            },
        )
    if lessons_per_chapter < 1 or lessons_per_chapter > limits.max_lessons_per_chapter:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_lessons_per_chapter",
                "message": (
                    "Invalid number of lessons per chapter. "
                    f"Your plan allows 1-{limits.max_lessons_per_chapter} lessons per chapter."
                ),
                "max_lessons_per_chapter": limits.max_lessons_per_chapter,
            },
        )


def validate_slide_count(limits: PlanLimits, slides: int) -> None:
    if slides < limits.min_slides or slides > limits.max_slides:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_slides",
                "message": f"Invalid number of slides. Your plan allows {limits.min_slides}-{limits.max_slides} slides.",
                "min_slides": limits.min_slides,
                "max_slides": limits.max_slides,
            },
        )
