import asyncio
import json

import pytest

from generation.client import GenerationServiceError, RetryingGenerationClient
from generation.models import GenerationJob
from generation.saga import (
    ChargeFailedError,
    InsufficientCreditsError,
    OutlineFailedError,
    SagaCoordinator,
)
from models.user import User
from services.credits import SqlLedgerGateway, ensure_credit_account


class InMemoryLedger:
    """Ledger fake keyed the same way as the SQL gateway."""

    def __init__(self, balance, *, accept_debits=True, refund_error=None):
        self.balance = balance
        self.accept_debits = accept_debits
        self.refund_error = refund_error
        self.entries = {}

    async def get_balance(self, user_id):
        return self.balance

    async def debit(self, user_id, amount, job_ref, description):
        key = job_ref.idempotency_key("debit")
        if key in self.entries:
            return True
        if not self.accept_debits or amount > self.balance:
            return False
        self.balance -= amount
        self.entries[key] = -amount
        return True

    async def refund(self, user_id, amount, job_ref, description):
        if self.refund_error is not None:
            raise self.refund_error
        key = job_ref.idempotency_key("refund")
        if key not in self.entries:
            self.balance += amount
            self.entries[key] = amount
        return True

    @property
    def refunds(self):
        return [amount for key, amount in self.entries.items() if key.endswith(":refund")]


class BrokenUnitGenerator:
    async def generate(self, job, spec, *, is_first):
        raise RuntimeError("renderer exploded")


def _course_job(chapters=3, lessons=1, prompt="Intro to Rust"):
    return GenerationJob(
        job_id="job-saga",
        user_id="saga-user",
        kind="course",
        difficulty="beginner",
        source_kind="prompt",
        group_count=chapters,
        units_per_group=lessons,
        prompt=prompt,
    )


def _outline(chapters):
    return json.dumps(
        {
            "courseTitle": "Rust Fundamentals",
            "chapters": [{"chapterTitle": title, "lessonTitles": lessons} for title, lessons in chapters],
        }
    )


LESSON_REPLY = json.dumps({"content": "Lesson body.", "quiz": {"questions": []}})


def _coordinator(ledger, service, sleep, **kwargs):
    client = RetryingGenerationClient(service, max_retries=3, backoff_seconds=2, sleep=sleep)
    kwargs.setdefault("throttle_seconds", 1.5)
    return SagaCoordinator(ledger, client, sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_outline_outage_refunds_the_full_charge(session_maker, scripted_service, recording_sleep):
    async with session_maker() as session:
        session.add(User(id="saga-user", email="saga@example.com"))
        await session.commit()
        assert await ensure_credit_account("saga-user", session) == 10

    service = scripted_service(lambda prompt: GenerationServiceError("503 Service Unavailable", transient=True))
    job = _course_job(chapters=3, lessons=1)

    async with session_maker() as session:
        gateway = SqlLedgerGateway(session)
        with pytest.raises(OutlineFailedError) as exc_info:
            await _coordinator(gateway, service, recording_sleep).run(job)

    assert exc_info.value.refunded
    assert exc_info.value.credits_refunded
    assert job.price == 6
    assert job.state_trail == ["priced", "charged", "outlining", "aborted_refunded"]
    assert len(service.prompts) == 3
    assert recording_sleep.delays == [2.0, 4.0]

    async with session_maker() as session:
        assert await SqlLedgerGateway(session).get_balance("saga-user") == 10


@pytest.mark.asyncio
async def test_single_unit_failure_degrades_without_refund(scripted_service, recording_sleep):
    titles = ["Alpha", "Beta", "Gamma", "Delta", "Epsilon"]

    def handler(prompt):
        if "course planner" in prompt:
            return _outline([("Basics", titles)])
        if "Lesson: Gamma" in prompt:
            return GenerationServiceError("invalid request", status_code=400)
        return LESSON_REPLY

    ledger = InMemoryLedger(10)
    service = scripted_service(handler)
    job = _course_job(chapters=1, lessons=5)

    result = await _coordinator(ledger, service, recording_sleep).run(job)

    lessons = result.artifact.chapters[0].lessons
    assert [lesson.title for lesson in lessons] == titles
    assert [lesson.degraded for lesson in lessons] == [False, False, True, False, False]
    assert result.cost_charged == 6
    assert result.degraded_unit_count == 1
    assert result.balance_after == 4
    assert result.warnings == ["1 of 5 units could not be generated and are marked degraded."]
    assert ledger.balance == 4
    assert ledger.refunds == []
    assert job.state_trail == ["priced", "charged", "outlining", "assembling", "done"]
    assert recording_sleep.delays == [1.5, 1.5, 1.5, 1.5]


@pytest.mark.asyncio
async def test_insufficient_credits_stops_before_any_side_effect(scripted_service, recording_sleep):
    ledger = InMemoryLedger(2)
    service = scripted_service(lambda prompt: LESSON_REPLY)
    job = _course_job(chapters=3, lessons=1)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await _coordinator(ledger, service, recording_sleep).run(job)

    assert (exc_info.value.required, exc_info.value.available) == (6, 2)
    assert exc_info.value.error_code == "insufficient_credits"
    assert ledger.entries == {}
    assert service.prompts == []
    assert job.state_trail == ["priced"]


@pytest.mark.asyncio
async def test_rejected_debit_fails_without_generation(scripted_service, recording_sleep):
    ledger = InMemoryLedger(10, accept_debits=False)
    service = scripted_service(lambda prompt: LESSON_REPLY)
    job = _course_job()

    with pytest.raises(ChargeFailedError):
        await _coordinator(ledger, service, recording_sleep).run(job)

    assert service.prompts == []
    assert ledger.balance == 10
    assert job.state_trail == ["priced", "charge_failed"]


@pytest.mark.asyncio
async def test_unreadable_outline_is_refunded(scripted_service, recording_sleep):
    ledger = InMemoryLedger(10)
    service = scripted_service(lambda prompt: "Here are some thoughts about Rust, no JSON today.")
    job = _course_job()

    with pytest.raises(OutlineFailedError) as exc_info:
        await _coordinator(ledger, service, recording_sleep).run(job)

    assert exc_info.value.refunded
    assert ledger.balance == 10
    assert ledger.refunds == [6]
    assert len(service.prompts) == 1


@pytest.mark.asyncio
async def test_failed_refund_is_reported(scripted_service, recording_sleep):
    ledger = InMemoryLedger(10, refund_error=RuntimeError("database unavailable"))
    service = scripted_service(lambda prompt: "not json")
    job = _course_job()

    with pytest.raises(OutlineFailedError) as exc_info:
        await _coordinator(ledger, service, recording_sleep).run(job)

    assert not exc_info.value.refunded
    assert not exc_info.value.credits_refunded
    assert ledger.balance == 4
    assert job.state_trail[-1] == "aborted_refunded"


@pytest.mark.asyncio
async def test_short_outline_is_padded_with_warning(scripted_service, recording_sleep):
    def handler(prompt):
        if "course planner" in prompt:
            return _outline([("Ownership", ["Moves", "Borrows"])])
        return LESSON_REPLY

    ledger = InMemoryLedger(10)
    service = scripted_service(handler)
    job = _course_job(chapters=2, lessons=2)

    result = await _coordinator(ledger, service, recording_sleep, throttle_seconds=0).run(job)

    chapters = result.artifact.chapters
    assert [chapter.title for chapter in chapters] == ["Ownership", "Chapter 2"]
    assert [lesson.title for lesson in chapters[1].lessons] == ["Lesson 1", "Lesson 2"]
    assert "Outline returned 1 chapters; adjusted to 2." in result.warnings
    assert result.degraded_unit_count == 0
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_unexpected_failure_after_charge_refunds_and_reraises(scripted_service, recording_sleep):
    ledger = InMemoryLedger(10)
    service = scripted_service(lambda prompt: _outline([("Basics", ["One"])]))
    job = _course_job(chapters=1, lessons=1)
    coordinator = _coordinator(
        ledger, service, recording_sleep, unit_generators={"course": BrokenUnitGenerator()}
    )

    with pytest.raises(RuntimeError, match="renderer exploded"):
        await coordinator.run(job)

    assert ledger.balance == 10
    assert ledger.refunds == [3]
    assert job.state_trail == ["priced", "charged", "outlining", "assembling", "aborted_refunded"]


@pytest.mark.asyncio
async def test_cancellation_after_charge_still_refunds(scripted_service, recording_sleep):
    def handler(prompt):
        if "course planner" in prompt:
            return _outline([("Basics", ["One"]), ("Depth", ["Two"]), ("Wrap", ["Three"])])
        return asyncio.CancelledError()

    ledger = InMemoryLedger(10)
    job = _course_job(chapters=3, lessons=1)

    with pytest.raises(asyncio.CancelledError):
        await _coordinator(ledger, scripted_service(handler), recording_sleep).run(job)

    assert ledger.balance == 10
    assert ledger.refunds == [6]
    assert job.state_trail == ["priced", "charged", "outlining", "assembling", "aborted_refunded"]


class FakeImageSearch:
    def __init__(self):
        self.keywords = []

    async def search(self, keyword):
        self.keywords.append(keyword)
        if keyword == "wrap up":
            return None
        return f"https://images.example.com/{keyword.replace(' ', '-')}.jpg"


@pytest.mark.asyncio
async def test_presentation_with_images(scripted_service, recording_sleep):
    outline = json.dumps(
        {
            "title": "SQL Basics",
            "slides": [
                {"title": "Welcome to SQL", "type": "title"},
                {"title": "Select Basics", "type": "content", "layout": "two-column"},
                {"title": "Wrap Up", "type": "conclusion", "layout": "sideways"},
            ],
        }
    )

    def handler(prompt):
        if "plan a presentation" in prompt:
            return outline
        return json.dumps({"content": "• Point one", "speaker_notes": "Talk it through"})

    ledger = InMemoryLedger(10)
    images = FakeImageSearch()
    job = GenerationJob(
        job_id="job-deck",
        user_id="saga-user",
        kind="presentation",
        difficulty="intermediate",
        source_kind="prompt",
        group_count=1,
        units_per_group=3,
        prompt="SQL for analysts",
        include_images=True,
        theme="dark",
        colors={"accent_color": "#ff6600"},
    )

    result = await _coordinator(ledger, scripted_service(handler), recording_sleep, image_search=images).run(job)

    slides = result.artifact.slides
    assert result.cost_charged == 3
    assert [(slide.type, slide.layout) for slide in slides] == [
        ("title", "default"),
        ("content", "two-column"),
        ("conclusion", "default"),
    ]
    assert slides[0].unit.image_url == "https://images.example.com/welcome-to-sql.jpg"
    assert slides[1].unit.image_url == "https://images.example.com/select.jpg"
    assert slides[2].unit.image_url is None
    assert slides[1].unit.substructure == "Talk it through"
    assert result.artifact.theme == "dark"
    assert result.artifact.accent_color == "#ff6600"
    assert result.warnings == ['No image found for "Wrap Up".']
    assert images.keywords == ["welcome to sql", "select", "wrap up"]


@pytest.mark.asyncio
async def test_images_without_provider_only_warn(scripted_service, recording_sleep):
    def handler(prompt):
        if "course planner" in prompt:
            return _outline([("Basics", ["One"])])
        return LESSON_REPLY

    ledger = InMemoryLedger(10)
    job = _course_job(chapters=1, lessons=1)
    job.include_images = True

    result = await _coordinator(ledger, scripted_service(handler), recording_sleep).run(job)

    assert result.cost_charged == 4
    assert result.warnings == ["Image add-on requested but no image provider is configured."]


@pytest.mark.asyncio
async def test_degraded_units_get_no_image(scripted_service, recording_sleep):
    def handler(prompt):
        if "course planner" in prompt:
            return _outline([("Basics", ["Ownership", "Borrowing"])])
        if "Lesson: Borrowing" in prompt:
            return GenerationServiceError("invalid request", status_code=400)
        return LESSON_REPLY

    ledger = InMemoryLedger(10)
    images = FakeImageSearch()
    job = _course_job(chapters=1, lessons=2)
    job.include_images = True

    result = await _coordinator(ledger, scripted_service(handler), recording_sleep, image_search=images).run(job)

    lessons = result.artifact.chapters[0].lessons
    assert lessons[1].degraded
    assert lessons[1].image_url is None
    assert lessons[0].image_url == "https://images.example.com/ownership.jpg"
    assert images.keywords == ["ownership"]
    assert result.warnings == ["1 of 2 units could not be generated and are marked degraded."]
