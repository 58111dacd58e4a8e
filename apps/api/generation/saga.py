"""Charge-then-generate workflow with compensating refunds.

A job moves through ``PRICED -> CHARGED -> OUTLINING -> ASSEMBLING -> DONE``.
Credits are debited before any generation call. If nothing usable comes
back from the outline stage the full charge is refunded; once an outline
exists the job always completes, with failed units marked degraded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, get_args

from generation.client import GenerationFailed, RetryingGenerationClient, Sleep
from generation.images import ImageSearchService, extract_image_keywords
from generation.models import (
    ContentUnit,
    CourseArtifact,
    CourseChapter,
    CourseOutline,
    GenerationJob,
    GenerationResult,
    PresentationArtifact,
    PresentationOutline,
    PresentationSlide,
    SlideLayout,
    SlideType,
)
from generation.parsing import ResilientTextParser
from generation.prompts import course_outline_prompt, presentation_outline_prompt
from generation.units import UnitGenerator, UnitSpec, lesson_unit_generator, slide_unit_generator
from services.credits import JobRef, LedgerGateway
from services.pricing import CreditQuote, quote_course, quote_presentation

logger = logging.getLogger(__name__)

_SLIDE_TYPES = set(get_args(SlideType))
_SLIDE_LAYOUTS = set(get_args(SlideLayout))
_SUBJECT_CHARS = 120


class SagaState(str, Enum):
    PRICED = "priced"
    CHARGED = "charged"
    OUTLINING = "outlining"
    ASSEMBLING = "assembling"
    DONE = "done"
    CHARGE_FAILED = "charge_failed"
    ABORTED_REFUNDED = "aborted_refunded"


class GenerationSagaError(Exception):
    """Job-level failure. ``credits_refunded`` tells the caller whether the charge was returned."""

    error_code = "generation_failed"
    credits_refunded = False


class InsufficientCreditsError(GenerationSagaError):
    error_code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. This request requires {required} credits, "
            f"but you have {available} credits available."
        )
        self.required = required
        self.available = available


class ChargeFailedError(GenerationSagaError):
    error_code = "charge_failed"

    def __init__(self, message: str = "Failed to process credit payment.") -> None:
        super().__init__(message)


class OutlineFailedError(GenerationSagaError):
    error_code = "outline_failed"

    def __init__(self, reason: str, *, refunded: bool) -> None:
        suffix = "Your credits have been refunded." if refunded else "Credits could not be refunded automatically."
        super().__init__(f"Failed to generate an outline: {reason}. {suffix}")
        self.reason = reason
        self.refunded = refunded
        self.credits_refunded = refunded


@dataclass
class OutlinePlan:
    title: str
    group_titles: List[str]
    units: List[UnitSpec]
    warnings: List[str] = field(default_factory=list)


def quote_for_job(job: GenerationJob) -> CreditQuote:
    if job.kind == "course":
        return quote_course(job.group_count, job.units_per_group, job.include_images)
    return quote_presentation(job.units_per_group, job.include_images)


def _short_subject(job: GenerationJob) -> str:
    subject = " ".join(job.subject.split())
    if len(subject) > _SUBJECT_CHARS:
        return subject[: _SUBJECT_CHARS - 3] + "..."
    return subject


def describe_charge(job: GenerationJob) -> str:
    if job.kind == "course":
        return (
            f"Course generation: {_short_subject(job)} "
            f"({job.group_count} chapters, {job.units_per_group} lessons each)"
        )
    return f"Presentation generation: {_short_subject(job)} ({job.units_per_group} slides)"


def plan_course(job: GenerationJob, outline: CourseOutline) -> OutlinePlan:
    """Fit a course outline to the requested chapter/lesson counts."""
    warnings: List[str] = []
    if len(outline.chapters) != job.group_count:
        warnings.append(f"Outline returned {len(outline.chapters)} chapters; adjusted to {job.group_count}.")

    group_titles: List[str] = []
    units: List[UnitSpec] = []
    for group_index in range(job.group_count):
        chapter = outline.chapters[group_index] if group_index < len(outline.chapters) else None
        chapter_title = (chapter.chapterTitle.strip() if chapter else "") or f"Chapter {group_index + 1}"
        lesson_titles = [title.strip() for title in (chapter.lessonTitles if chapter else []) if title.strip()]
        if chapter is not None and len(lesson_titles) != job.units_per_group:
            warnings.append(
                f'Chapter "{chapter_title}" returned {len(lesson_titles)} lessons; adjusted to {job.units_per_group}.'
            )

        group_titles.append(chapter_title)
        for unit_index in range(job.units_per_group):
            title = lesson_titles[unit_index] if unit_index < len(lesson_titles) else f"Lesson {unit_index + 1}"
            units.append(
                UnitSpec(group_index=group_index, unit_index=unit_index, title=title, group_title=chapter_title)
            )

    return OutlinePlan(title=outline.courseTitle.strip(), group_titles=group_titles, units=units, warnings=warnings)


def plan_presentation(job: GenerationJob, outline: PresentationOutline) -> OutlinePlan:
    """Fit a presentation outline to the requested slide count."""
    count = job.units_per_group
    warnings: List[str] = []
    if len(outline.slides) != count:
        warnings.append(f"Outline returned {len(outline.slides)} slides; adjusted to {count}.")

    title = outline.title.strip()
    units: List[UnitSpec] = []
    for index in range(count):
        default_type = "title" if index == 0 else "conclusion" if index == count - 1 else "content"
        slide = outline.slides[index] if index < len(outline.slides) else None
        slide_type = slide.type if slide and slide.type in _SLIDE_TYPES else default_type
        layout = slide.layout if slide and slide.layout in _SLIDE_LAYOUTS else "default"
        units.append(
            UnitSpec(
                group_index=0,
                unit_index=index,
                title=(slide.title.strip() if slide else "") or f"Slide {index + 1}",
                group_title=title,
                slide_type=slide_type,
                layout=layout,
            )
        )
    return OutlinePlan(title=title, group_titles=[title], units=units, warnings=warnings)


class SagaCoordinator:
    def __init__(
        self,
        ledger: LedgerGateway,
        client: RetryingGenerationClient,
        *,
        image_search: Optional[ImageSearchService] = None,
        unit_generators: Optional[Dict[str, UnitGenerator]] = None,
        throttle_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.client = client
        self.image_search = image_search
        self.unit_generators = unit_generators or {
            "course": lesson_unit_generator(client, throttle_seconds=throttle_seconds, sleep=sleep),
            "presentation": slide_unit_generator(client, throttle_seconds=throttle_seconds, sleep=sleep),
        }

    def _advance(self, job: GenerationJob, state: SagaState) -> None:
        job.state_trail.append(state.value)
        logger.info("Generation job %s -> %s", job.job_id, state.value)

    async def run(self, job: GenerationJob) -> GenerationResult:
        quote = quote_for_job(job)
        cost = quote.cost
        job.price = cost
        self._advance(job, SagaState.PRICED)

        available = await self.ledger.get_balance(job.user_id)
        if available < cost:
            logger.info("Job %s rejected: requires %s credits, user %s has %s", job.job_id, cost, job.user_id, available)
            raise InsufficientCreditsError(cost, available)

        job_ref = JobRef(job_id=job.job_id, kind=job.kind)
        if not await self.ledger.debit(job.user_id, cost, job_ref, describe_charge(job)):
            self._advance(job, SagaState.CHARGE_FAILED)
            raise ChargeFailedError()
        self._advance(job, SagaState.CHARGED)

        try:
            balance_after = await self.ledger.get_balance(job.user_id)

            self._advance(job, SagaState.OUTLINING)
            plan, reason = await self._outline(job)
            if plan is None:
                refunded = await self._refund(job, job_ref, cost)
                self._advance(job, SagaState.ABORTED_REFUNDED)
                raise OutlineFailedError(reason, refunded=refunded)

            self._advance(job, SagaState.ASSEMBLING)
            units = await self._generate_units(job, plan)
            warnings = list(plan.warnings)
            if job.include_images:
                warnings.extend(await self._attach_images(units, plan))

            artifact = self._assemble(job, plan, units)
            degraded = sum(1 for unit in units if unit.degraded)
            if degraded:
                warnings.append(f"{degraded} of {len(units)} units could not be generated and are marked degraded.")
            self._advance(job, SagaState.DONE)
        except OutlineFailedError:
            raise
        except BaseException:
            # Also covers cancellation; the refund is shielded so it still lands.
            logger.exception("Generation job %s failed after charge; refunding", job.job_id)
            await asyncio.shield(self._refund(job, job_ref, cost))
            self._advance(job, SagaState.ABORTED_REFUNDED)
            raise

        return GenerationResult(
            job_id=job.job_id,
            artifact=artifact,
            cost_charged=cost,
            degraded_unit_count=degraded,
            warnings=warnings,
            balance_after=balance_after,
        )

    async def _refund(self, job: GenerationJob, job_ref: JobRef, cost: int) -> bool:
        description = f"Refund for failed {job.kind} generation: {_short_subject(job)}"
        try:
            refunded = await self.ledger.refund(job.user_id, cost, job_ref, description)
        except Exception:
            logger.exception("Refund of %s credits for job %s raised", cost, job.job_id)
            refunded = False
        if refunded:
            logger.info("Refunded %s credits to user %s for job %s", cost, job.user_id, job.job_id)
        else:
            logger.error("Refund of %s credits to user %s for job %s FAILED", cost, job.user_id, job.job_id)
        return refunded

    async def _outline(self, job: GenerationJob) -> Tuple[Optional[OutlinePlan], str]:
        if job.kind == "course":
            prompt, context = course_outline_prompt(job), "Course outline generation"
            parser = ResilientTextParser(
                lambda message: CourseOutline(), schema=CourseOutline, accept=lambda outline: outline.is_usable()
            )
        else:
            prompt, context = presentation_outline_prompt(job), "Presentation outline generation"
            parser = ResilientTextParser(
                lambda message: PresentationOutline(),
                schema=PresentationOutline,
                accept=lambda outline: outline.is_usable(),
            )

        try:
            text = await self.client.generate(prompt, context)
        except GenerationFailed as exc:
            logger.warning("Outline for job %s failed: %s", job.job_id, exc)
            return None, str(exc)

        outcome = parser.parse(text, context.lower())
        if outcome.fell_back:
            return None, "the outline response was empty or unreadable"

        if job.kind == "course":
            return plan_course(job, outcome.value), ""
        return plan_presentation(job, outcome.value), ""

    async def _generate_units(self, job: GenerationJob, plan: OutlinePlan) -> List[ContentUnit]:
        generator = self.unit_generators[job.kind]
        units: List[ContentUnit] = []
        for position, spec in enumerate(plan.units):
            units.append(await generator.generate(job, spec, is_first=position == 0))
        return units

    async def _attach_images(self, units: List[ContentUnit], plan: OutlinePlan) -> List[str]:
        if self.image_search is None:
            return ["Image add-on requested but no image provider is configured."]

        warnings: List[str] = []
        for unit, spec in zip(units, plan.units):
            if unit.degraded:
                continue
            keywords = extract_image_keywords(unit.title, unit.body, spec.slide_type)
            if not keywords:
                continue
            try:
                unit.image_url = await self.image_search.search(keywords[0])
            except Exception as exc:
                logger.warning("Image search for %r failed: %s", unit.title, exc)
                warnings.append(f'Image search failed for "{unit.title}".')
                continue
            if unit.image_url is None:
                warnings.append(f'No image found for "{unit.title}".')
        return warnings

    def _assemble(self, job: GenerationJob, plan: OutlinePlan, units: List[ContentUnit]):
        if job.kind == "course":
            chapters = [
                CourseChapter(title=title, lessons=[unit for unit in units if unit.group_index == index])
                for index, title in enumerate(plan.group_titles)
            ]
            return CourseArtifact(title=plan.title, difficulty=job.difficulty, chapters=chapters)

        return PresentationArtifact(
            title=plan.title,
            difficulty=job.difficulty,
            theme=job.theme,
            background_color=job.colors.get("background_color"),
            text_color=job.colors.get("text_color"),
            accent_color=job.colors.get("accent_color"),
            slides=[
                PresentationSlide(unit=unit, type=spec.slide_type, layout=spec.layout)
                for unit, spec in zip(units, plan.units)
            ],
        )
