from __future__ import annotations

from typing import TYPE_CHECKING

from generation.models import GenerationJob

if TYPE_CHECKING:
    from generation.units import UnitSpec


def _source_block(job: GenerationJob) -> str:
    if job.document is not None:
        return (
            f"Source document: {job.document.title} ({job.document.filename})\n"
            "Document content:\n"
            f"{job.document.excerpt}\n"
        )
    return f'User request: "{job.prompt}"\n'


def course_outline_prompt(job: GenerationJob) -> str:
    focus = "the document content" if job.document is not None else "the user's request"
    return (
        f"You are a course planner. Based on {focus}, generate a course outline in JSON only.\n"
        f"{_source_block(job)}"
        f"Difficulty: {job.difficulty}\n"
        f"Generate a course title and exactly {job.group_count} chapter titles.\n"
        f"For each chapter, generate exactly {job.units_per_group} unique lesson titles.\n"
        "Return schema:\n"
        "{\n"
        '  "courseTitle": "string",\n'
        '  "chapters": [\n'
        '    {"chapterTitle": "string", "lessonTitles": ["string"]}\n'
        "  ]\n"
        "}\n"
        "Rules: no markdown, no extra keys outside schema."
    )


def lesson_prompt(job: GenerationJob, spec: "UnitSpec") -> str:
    return (
        "You are an educator writing the content for a single lesson in JSON only.\n"
        f"Course topic: {job.subject}\n"
        f"Chapter: {spec.group_title}\n"
        f"Lesson: {spec.title}\n"
        f"Difficulty: {job.difficulty}\n"
        + (f"Ground the lesson in this document content:\n{job.document.excerpt}\n" if job.document else "")
        + "Return schema:\n"
        "{\n"
        f'  "content": "5-7 paragraphs written for the {job.difficulty} level",\n'
        '  "quiz": {\n'
        '    "questions": [\n'
        '      {"question": "string", "choices": ["string", "string", "string", "string"], "answer": "string"}\n'
        "    ]\n"
        "  }\n"
        "}\n"
        "Rules: 3 quiz questions, the answer must be one of the choices, no markdown."
    )


def presentation_outline_prompt(job: GenerationJob) -> str:
    focus = "the document content" if job.document is not None else "the user's request"
    return (
        f"You are a presentation designer. Based on {focus}, plan a presentation in JSON only.\n"
        f"{_source_block(job)}"
        f"Difficulty: {job.difficulty} (target audience: {job.difficulty} level learners)\n"
        f"Plan exactly {job.units_per_group} slides with a logical flow from introduction to conclusion.\n"
        "Slide types: title, content, image, chart, conclusion.\n"
        "Layouts: default, title-only, two-column, image-left, image-right, full-image.\n"
        "Return schema:\n"
        "{\n"
        '  "title": "string",\n'
        '  "slides": [\n'
        '    {"title": "string", "type": "title|content|image|chart|conclusion", "layout": "string"}\n'
        "  ]\n"
        "}\n"
        "Rules: the first slide is a title slide, the last is a conclusion, no markdown."
    )


def slide_prompt(job: GenerationJob, spec: "UnitSpec") -> str:
    return (
        "You are a presentation designer writing one slide in JSON only.\n"
        f"Presentation: {spec.group_title}\n"
        f"Topic: {job.subject}\n"
        f"Slide {spec.unit_index + 1} of {job.units_per_group}: {spec.title}\n"
        f"Slide type: {spec.slide_type}\n"
        f"Difficulty: {job.difficulty}\n"
        + (f"Ground the slide in this document content:\n{job.document.excerpt}\n" if job.document else "")
        + "Return schema:\n"
        "{\n"
        '  "content": "concise slide text, use \\n for line breaks and \\u2022 for bullet points",\n'
        '  "speaker_notes": "detailed notes to help the presenter explain this slide"\n'
        "}\n"
        "Rules: at most 6 bullet points, no markdown."
    )
