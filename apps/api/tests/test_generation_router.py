import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import settings
from database import get_db
from generation.client import GenerationServiceError
from generation.documents import ExtractedDocument, PdfDocumentExtractor
from main import app
from routers.generation import get_generation_service, get_generation_sleep, get_image_search
from services.session_token import create_session_token


GENERATION_USER_ID = "generation-user"
AUTH_HEADER = {
    "Authorization": f"Bearer {create_session_token(GENERATION_USER_ID, 'generation@example.com')['token']}"
}

LESSON_REPLY = json.dumps(
    {
        "content": "Ownership decides who frees memory.",
        "quiz": {"questions": [{"question": "Who frees memory?", "choices": ["Owner", "GC"], "answer": "Owner"}]},
    }
)
SLIDE_REPLY = json.dumps({"content": "• Borrowing\n• Lifetimes", "speaker_notes": "Walk through one example."})


def _course_outline(chapters, lessons):
    return json.dumps(
        {
            "courseTitle": "Rust Fundamentals",
            "chapters": [
                {
                    "chapterTitle": f"Chapter {chapter + 1} topic",
                    "lessonTitles": [f"Lesson {chapter + 1}.{lesson + 1}" for lesson in range(lessons)],
                }
                for chapter in range(chapters)
            ],
        }
    )


def default_handler(prompt):
    if "course planner" in prompt:
        return _course_outline(3, 1)
    if "single lesson" in prompt:
        return LESSON_REPLY
    if "plan a presentation" in prompt:
        return json.dumps(
            {
                "title": "Rust in Production",
                "slides": [
                    {"title": "Why Rust", "type": "title"},
                    {"title": "Borrowing", "type": "content"},
                    {"title": "Takeaways", "type": "conclusion"},
                ],
            }
        )
    if "writing one slide" in prompt:
        return SLIDE_REPLY
    return GenerationServiceError(f"unexpected prompt: {prompt[:40]}", status_code=400)


@pytest_asyncio.fixture
async def generation_client(session_maker, scripted_service, recording_sleep):
    service = scripted_service(default_handler)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_generation_service] = lambda: service
    app.dependency_overrides[get_generation_sleep] = lambda: recording_sleep
    app.dependency_overrides[get_image_search] = lambda: None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, service

    for dependency in (get_db, get_generation_service, get_generation_sleep, get_image_search):
        app.dependency_overrides.pop(dependency, None)


async def _balance(client):
    response = await client.get("/billing/credits", headers=AUTH_HEADER)
    assert response.status_code == 200
    return response.json()["balance"]


@pytest.mark.asyncio
async def test_course_generation_charges_and_returns_artifact(generation_client, recording_sleep):
    client, service = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 3, "lessons_per_chapter": 1, "difficulty": "beginner"},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["cost_charged"] == 6
    assert body["balance_after"] == 4
    assert body["degraded_unit_count"] == 0
    assert body["artifact"]["kind"] == "course"
    assert [chapter["title"] for chapter in body["artifact"]["chapters"]] == [
        "Chapter 1 topic",
        "Chapter 2 topic",
        "Chapter 3 topic",
    ]
    lesson = body["artifact"]["chapters"][0]["lessons"][0]
    assert lesson["status"] == "ok"
    assert lesson["substructure"]["questions"][0]["answer"] == "Owner"
    assert len(service.prompts) == 4
    assert recording_sleep.delays == [settings.UNIT_THROTTLE_SECONDS] * 2
    assert await _balance(client) == 4


@pytest.mark.asyncio
async def test_course_beyond_balance_returns_payment_required(generation_client):
    client, service = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 3, "lessons_per_chapter": 3},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "insufficient_credits"
    assert body["required"] == 12
    assert body["available"] == 10
    assert body["credits_refunded"] is False
    assert service.prompts == []
    assert await _balance(client) == 10


@pytest.mark.asyncio
async def test_outline_outage_returns_bad_gateway_and_refunds(generation_client, recording_sleep):
    client, service = generation_client
    service.handler = lambda prompt: GenerationServiceError("503 Service Unavailable", transient=True)

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 3, "lessons_per_chapter": 1},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "outline_failed"
    assert body["credits_refunded"] is True
    assert len(service.prompts) == settings.GENERATION_MAX_RETRIES
    assert await _balance(client) == 10

    history = await client.get("/billing/transactions", headers=AUTH_HEADER)
    assert sorted(entry["amount"] for entry in history.json()["transactions"]) == [-6, 6, 10]


@pytest.mark.asyncio
async def test_course_outside_plan_limits_is_rejected(generation_client):
    client, service = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 4, "lessons_per_chapter": 1},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_chapters"
    assert service.prompts == []


@pytest.mark.asyncio
async def test_blank_prompt_is_rejected(generation_client):
    client, _ = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "   ", "chapters": 1, "lessons_per_chapter": 1},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_images_without_provider_are_rejected_before_charging(generation_client):
    client, service = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 1, "lessons_per_chapter": 1, "include_images": True},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400
    assert service.prompts == []
    assert await _balance(client) == 10


@pytest.mark.asyncio
async def test_presentation_generation(generation_client):
    client, _ = generation_client

    response = await client.post(
        "/generation/presentation",
        json={
            "prompt": "Rust for backend teams",
            "slides": 3,
            "difficulty": "intermediate",
            "theme": "midnight",
            "colors": {"accent_color": "#22aa88"},
        },
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["cost_charged"] == 1
    assert body["balance_after"] == 9
    artifact = body["artifact"]
    assert artifact["kind"] == "presentation"
    assert artifact["theme"] == "midnight"
    assert artifact["accent_color"] == "#22aa88"
    assert [slide["type"] for slide in artifact["slides"]] == ["title", "content", "conclusion"]
    assert artifact["slides"][1]["unit"]["substructure"] == "Walk through one example."


@pytest.mark.asyncio
async def test_course_from_document_uses_extracted_text(generation_client, monkeypatch):
    client, service = generation_client

    def fake_extract(self, data, filename):
        assert data.startswith(b"%PDF")
        return ExtractedDocument(text="Ownership and borrowing explained.", page_count=2, title="Rust Handbook")

    monkeypatch.setattr(PdfDocumentExtractor, "extract", fake_extract)
    service.handler = lambda prompt: _course_outline(1, 1) if "course planner" in prompt else LESSON_REPLY

    response = await client.post(
        "/generation/course/document",
        data={"chapters": "1", "lessons_per_chapter": "1"},
        files={"file": ("handbook.pdf", b"%PDF-1.4 fake", "application/pdf")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200
    assert response.json()["cost_charged"] == 3
    assert "Source document: Rust Handbook (handbook.pdf)" in service.prompts[0]
    assert "Ownership and borrowing explained." in service.prompts[0]


@pytest.mark.asyncio
async def test_document_upload_rejects_non_pdf(generation_client):
    client, service = generation_client

    response = await client.post(
        "/generation/course/document",
        data={"chapters": "1", "lessons_per_chapter": "1"},
        files={"file": ("notes.txt", b"plain text", "text/plain")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 422
    assert service.prompts == []


@pytest.mark.asyncio
async def test_missing_provider_key_returns_service_unavailable(generation_client, monkeypatch):
    client, _ = generation_client
    app.dependency_overrides.pop(get_generation_service, None)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 1, "lessons_per_chapter": 1},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_generation_requires_session(generation_client):
    client, _ = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 1, "lessons_per_chapter": 1},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cross_user_request_is_forbidden(generation_client):
    client, _ = generation_client

    response = await client.post(
        "/generation/course",
        json={"prompt": "Intro to Rust", "chapters": 1, "lessons_per_chapter": 1, "user_id": "someone-else"},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_quote_and_limits(generation_client):
    client, _ = generation_client

    quote = await client.get("/generation/quote", params={"kind": "presentation", "slides": 20, "include_images": True})
    limits = await client.get("/generation/limits", headers=AUTH_HEADER)

    assert quote.status_code == 200
    assert quote.json()["cost"] == 5
    assert quote.json()["groups"] == 3
    assert limits.status_code == 200
    assert limits.json()["plan_limits"] == {
        "plan": "default",
        "max_chapters": 3,
        "max_lessons_per_chapter": 3,
        "min_slides": 3,
        "max_slides": 50,
    }
