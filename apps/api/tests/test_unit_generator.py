import json

import pytest

from generation.client import GenerationServiceError, RetryingGenerationClient
from generation.models import GenerationJob, Quiz, UnitStatus
from generation.units import UnitSpec, lesson_unit_generator, slide_unit_generator


def _job(kind="course"):
    return GenerationJob(
        job_id="job-units",
        user_id="user-units",
        kind=kind,
        difficulty="beginner",
        source_kind="prompt",
        group_count=1,
        units_per_group=3,
        prompt="Intro to SQL",
    )


SPEC = UnitSpec(group_index=0, unit_index=1, title="Joins", group_title="Querying")

LESSON_REPLY = json.dumps(
    {
        "content": "A join combines rows from two tables.",
        "quiz": {"questions": [{"question": "What does a join do?", "choices": ["a", "b"], "answer": "a"}]},
    }
)


def _generator(service, sleep, **kwargs):
    client = RetryingGenerationClient(service, max_retries=3, backoff_seconds=2, sleep=sleep)
    return lesson_unit_generator(client, throttle_seconds=1.5, sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_lesson_is_generated_from_parsed_payload(scripted_service, recording_sleep):
    service = scripted_service(lambda prompt: LESSON_REPLY)

    unit = await _generator(service, recording_sleep).generate(_job(), SPEC, is_first=True)

    assert unit.status == UnitStatus.OK
    assert unit.body == "A join combines rows from two tables."
    assert unit.substructure.questions[0].answer == "a"
    assert (unit.group_index, unit.unit_index) == (0, 1)
    assert "Lesson: Joins" in service.prompts[0]
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_units_after_the_first_wait_for_the_throttle(scripted_service, recording_sleep):
    service = scripted_service(lambda prompt: LESSON_REPLY)
    generator = _generator(service, recording_sleep)

    await generator.generate(_job(), SPEC, is_first=True)
    await generator.generate(_job(), SPEC, is_first=False)

    assert recording_sleep.delays == [1.5]


@pytest.mark.asyncio
async def test_exhausted_retries_yield_degraded_placeholder(scripted_service, recording_sleep):
    service = scripted_service(lambda prompt: GenerationServiceError("503 overloaded", transient=True))

    unit = await _generator(service, recording_sleep).generate(_job(), SPEC, is_first=True)

    assert unit.status == UnitStatus.DEGRADED
    assert unit.degraded
    assert unit.title == "Joins"
    assert "Joins" in unit.body and "Querying" in unit.body
    assert unit.substructure == Quiz()
    assert len(service.prompts) == 3
    assert recording_sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_unreadable_reply_yields_degraded_placeholder(scripted_service, recording_sleep):
    service = scripted_service(lambda prompt: "I'm sorry, I can't help with that.")

    unit = await _generator(service, recording_sleep).generate(_job(), SPEC, is_first=True)

    assert unit.degraded
    assert len(service.prompts) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_absorbed(scripted_service, recording_sleep):
    service = scripted_service(lambda prompt: LESSON_REPLY)
    generator = _generator(service, recording_sleep)
    generator.assemble = lambda payload: 1 / 0

    unit = await generator.generate(_job(), SPEC, is_first=True)

    assert unit.degraded


@pytest.mark.asyncio
async def test_slide_keeps_speaker_notes(scripted_service, recording_sleep):
    service = scripted_service(
        lambda prompt: "{content: '• Point one', speaker_notes: 'Explain the point',}"
    )
    client = RetryingGenerationClient(service, max_retries=3, backoff_seconds=2, sleep=recording_sleep)
    spec = UnitSpec(group_index=0, unit_index=0, title="Welcome", group_title="SQL Basics", slide_type="title")

    unit = await slide_unit_generator(client, sleep=recording_sleep).generate(_job("presentation"), spec, is_first=True)

    assert unit.status == UnitStatus.OK
    assert unit.body == "• Point one"
    assert unit.substructure == "Explain the point"
    assert "Slide 1 of 3: Welcome" in service.prompts[0]
