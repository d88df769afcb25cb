"""Course request and outline contracts shared by the API and the graph builder."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, model_validator

MAX_LESSONS = 30
MAX_SECTIONS_PER_LESSON = 10

GenerationMode = Literal["kb_only", "kb_priority", "kb_supplemented", "general"]
ContentDepth = Literal["overview", "detailed", "comprehensive"]


class OutlineSection(BaseModel):
  """One section of a lesson in the course outline."""

  title: StrictStr = Field(min_length=1, max_length=200)
  summary: StrictStr = Field(default="", max_length=2000)
  model_config = ConfigDict(extra="ignore")


class OutlineLesson(BaseModel):
  """One lesson of the course outline with its ordered sections."""

  title: StrictStr = Field(min_length=1, max_length=200)
  summary: StrictStr = Field(default="", max_length=2000)
  sections: list[OutlineSection] = Field(min_length=1, max_length=MAX_SECTIONS_PER_LESSON)
  model_config = ConfigDict(extra="ignore")


class CourseOutline(BaseModel):
  """Course outline produced by the outline task or supplied by the caller."""

  title: StrictStr = Field(min_length=1, max_length=200)
  description: StrictStr = Field(default="", max_length=4000)
  lessons: list[OutlineLesson] = Field(min_length=1, max_length=MAX_LESSONS)
  model_config = ConfigDict(extra="ignore")

  @model_validator(mode="after")
  def ensure_unique_lessons(self) -> CourseOutline:
    # Lesson titles double as navigation labels; duplicates make the course ambiguous.
    titles = [lesson.title.strip().lower() for lesson in self.lessons]
    if len(set(titles)) != len(titles):
      raise ValueError("Lesson titles must be unique within a course outline.")
    return self


class CourseRequest(BaseModel):
  """Immutable snapshot of a "build a course" request."""

  title: StrictStr = Field(min_length=1, max_length=200, description="Course title.", examples=["Introduction to Statistics"])
  description: StrictStr | None = Field(default=None, max_length=2000, description="Optional course description for prompt guidance.")
  depth: ContentDepth = Field(default="detailed", description="Lesson content depth.")
  mode: GenerationMode = Field(default="general", description="Generation mode controlling how source material is used.")
  academic_level: StrictStr = Field(default="college", min_length=1, max_length=50)
  lesson_count: int = Field(default=4, ge=1, le=MAX_LESSONS, description="Number of lessons the outline should contain.")
  include_assessments: bool = Field(default=True, description="Create one assessment task per lesson.")
  include_media: bool = Field(default=False, description="Create one media task per lesson.")
  outline: CourseOutline | None = Field(default=None, description="Optional caller-supplied outline used instead of generating one.")
  idempotency_key: StrictStr | None = Field(default=None, min_length=1, max_length=200, description="Optional client key to deduplicate repeated submissions.")
  model_config = ConfigDict(extra="forbid")
