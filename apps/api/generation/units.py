"""Per-unit generation: one lesson or one slide at a time."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from config import settings
from generation.client import GenerationFailed, RetryingGenerationClient, Sleep
from generation.models import ContentUnit, GenerationJob, LessonPayload, Quiz, SlidePayload, UnitStatus
from generation.parsing import ResilientTextParser
from generation.prompts import lesson_prompt, slide_prompt

logger = logging.getLogger(__name__)

Substructure = Union[Quiz, str]


@dataclass(frozen=True)
class UnitSpec:
    """Position and title of one requested unit inside the outline."""

    group_index: int
    unit_index: int
    title: str
    group_title: str
    slide_type: str = "content"
    layout: str = "default"

    @property
    def label(self) -> str:
        return f"{self.group_index + 1}.{self.unit_index + 1} {self.title}"


class UnitGenerator:
    """Generate a single unit and absorb every failure into a degraded unit.

    Calls after the first one in a job are preceded by a fixed throttle
    delay so a sequence of units does not hammer the upstream service.
    """

    def __init__(
        self,
        client: RetryingGenerationClient,
        parser: ResilientTextParser,
        *,
        build_prompt: Callable[[GenerationJob, UnitSpec], str],
        assemble: Callable[[Any], Tuple[str, Substructure]],
        empty_substructure: Callable[[], Substructure],
        noun: str = "unit",
        throttle_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.parser = parser
        self.build_prompt = build_prompt
        self.assemble = assemble
        self.empty_substructure = empty_substructure
        self.noun = noun
        self.throttle_seconds = float(
            settings.UNIT_THROTTLE_SECONDS if throttle_seconds is None else throttle_seconds
        )
        self.sleep = sleep

    def _placeholder(self, spec: UnitSpec, reason: str) -> ContentUnit:
        return ContentUnit(
            title=spec.title,
            body=(
                f"This {self.noun} covers {spec.title} in the context of {spec.group_title}. "
                f"Its content could not be generated ({reason})."
            ),
            substructure=self.empty_substructure(),
            status=UnitStatus.DEGRADED,
            group_index=spec.group_index,
            unit_index=spec.unit_index,
        )

    async def generate(self, job: GenerationJob, spec: UnitSpec, *, is_first: bool) -> ContentUnit:
        if not is_first and self.throttle_seconds > 0:
            await self.sleep(self.throttle_seconds)

        context = f'{self.noun.capitalize()} "{spec.title}"'
        try:
            text = await self.client.generate(self.build_prompt(job, spec), context)
            outcome = self.parser.parse(text, context)
            if outcome.fell_back:
                return self._placeholder(spec, "unreadable response")
            body, substructure = self.assemble(outcome.value)
        except GenerationFailed as exc:
            logger.warning("%s degraded for job %s: %s", context, job.job_id, exc)
            return self._placeholder(spec, "generation failed")
        except Exception:
            logger.exception("%s degraded for job %s after unexpected error", context, job.job_id)
            return self._placeholder(spec, "unexpected error")

        return ContentUnit(
            title=spec.title,
            body=body,
            substructure=substructure,
            status=UnitStatus.OK,
            group_index=spec.group_index,
            unit_index=spec.unit_index,
        )


def _has_content(payload: Any) -> bool:
    return bool(getattr(payload, "content", "").strip())


def lesson_parser() -> ResilientTextParser[LessonPayload]:
    return ResilientTextParser(lambda message: LessonPayload(content=message), schema=LessonPayload, accept=_has_content)


def slide_parser() -> ResilientTextParser[SlidePayload]:
    return ResilientTextParser(lambda message: SlidePayload(content=message), schema=SlidePayload, accept=_has_content)


def lesson_unit_generator(client: RetryingGenerationClient, **kwargs: Any) -> UnitGenerator:
    return UnitGenerator(
        client,
        lesson_parser(),
        build_prompt=lesson_prompt,
        assemble=lambda payload: (payload.content, payload.quiz),
        empty_substructure=Quiz,
        noun="lesson",
        **kwargs,
    )


def slide_unit_generator(client: RetryingGenerationClient, **kwargs: Any) -> UnitGenerator:
    return UnitGenerator(
        client,
        slide_parser(),
        build_prompt=slide_prompt,
        assemble=lambda payload: (payload.content, payload.speaker_notes),
        empty_substructure=str,
        noun="slide",
        **kwargs,
    )
