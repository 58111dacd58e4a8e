from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


Difficulty = Literal["beginner", "intermediate", "advanced"]
SourceKind = Literal["prompt", "document"]
ArtifactKind = Literal["course", "presentation"]
SlideType = Literal["title", "content", "image", "chart", "conclusion"]
SlideLayout = Literal["default", "title-only", "two-column", "image-left", "image-right", "full-image"]


class UnitStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"


# --- Raw model output shapes -------------------------------------------------


class QuizQuestion(BaseModel):
    question: str
    choices: List[str] = Field(default_factory=list)
    answer: str = ""

    @field_validator("choices", mode="before")
    @classmethod
    def _stringify_choices(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value


class Quiz(BaseModel):
    questions: List[QuizQuestion] = Field(default_factory=list)


class OutlineChapter(BaseModel):
    chapterTitle: str = ""
    lessonTitles: List[str] = Field(default_factory=list)


class CourseOutline(BaseModel):
    courseTitle: str = ""
    chapters: List[OutlineChapter] = Field(default_factory=list)

    def is_usable(self) -> bool:
        return bool(self.courseTitle.strip()) and any(chapter.lessonTitles for chapter in self.chapters)


class LessonPayload(BaseModel):
    content: str
    quiz: Quiz = Field(default_factory=Quiz)


class OutlineSlide(BaseModel):
    title: str = ""
    type: str = "content"
    layout: str = "default"


class PresentationOutline(BaseModel):
    title: str = ""
    slides: List[OutlineSlide] = Field(default_factory=list)

    def is_usable(self) -> bool:
        return bool(self.title.strip()) and bool(self.slides)


class SlidePayload(BaseModel):
    content: str
    speaker_notes: str = ""


# --- Assembled artifacts -----------------------------------------------------


class ContentUnit(BaseModel):
    """One lesson or one slide."""

    title: str
    body: str
    substructure: Union[Quiz, str]
    status: UnitStatus = UnitStatus.OK
    group_index: int = 0
    unit_index: int = 0
    image_url: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status == UnitStatus.DEGRADED


class CourseChapter(BaseModel):
    title: str
    lessons: List[ContentUnit]


class CourseArtifact(BaseModel):
    kind: Literal["course"] = "course"
    title: str
    difficulty: Difficulty
    chapters: List[CourseChapter]

    def units(self) -> List[ContentUnit]:
        return [lesson for chapter in self.chapters for lesson in chapter.lessons]


class PresentationSlide(BaseModel):
    unit: ContentUnit
    type: str = "content"
    layout: str = "default"


class PresentationArtifact(BaseModel):
    kind: Literal["presentation"] = "presentation"
    title: str
    difficulty: Difficulty
    theme: str = "default"
    background_color: Optional[str] = None
    text_color: Optional[str] = None
    accent_color: Optional[str] = None
    slides: List[PresentationSlide]

    def units(self) -> List[ContentUnit]:
        return [slide.unit for slide in self.slides]


Artifact = Union[CourseArtifact, PresentationArtifact]


# --- Job / result ------------------------------------------------------------


@dataclass(frozen=True)
class SourceDocument:
    filename: str
    title: str
    excerpt: str
    page_count: int = 0
    author: Optional[str] = None


@dataclass
class GenerationJob:
    """In-memory description of one user-initiated generation request."""

    job_id: str
    user_id: str
    kind: ArtifactKind
    difficulty: Difficulty
    source_kind: SourceKind
    group_count: int
    units_per_group: int
    prompt: str = ""
    document: Optional[SourceDocument] = None
    include_images: bool = False
    theme: str = "default"
    colors: Dict[str, Optional[str]] = field(default_factory=dict)
    price: Optional[int] = None
    state_trail: List[str] = field(default_factory=list)

    @property
    def requested_unit_count(self) -> int:
        return self.group_count * self.units_per_group

    @property
    def subject(self) -> str:
        if self.document is not None:
            return self.document.title
        return self.prompt


@dataclass
class GenerationResult:
    job_id: str
    artifact: Artifact
    cost_charged: int
    degraded_unit_count: int
    warnings: List[str] = field(default_factory=list)
    balance_after: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "artifact": self.artifact.model_dump(mode="json"),
            "cost_charged": self.cost_charged,
            "degraded_unit_count": self.degraded_unit_count,
            "warnings": list(self.warnings),
            "balance_after": self.balance_after,
        }
