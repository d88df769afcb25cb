"""Prompt templates and output schemas for each generation task type."""

from __future__ import annotations

from typing import Any

_MODE_GUIDANCE: dict[str, str] = {
  "kb_only": "Use only the provided source material. Flag gaps instead of filling them with outside knowledge.",
  "kb_priority": "Prefer the provided source material and supplement only small gaps with general knowledge.",
  "kb_supplemented": "Use the provided source material as a foundation and supplement freely with general knowledge.",
  "general": "Use general subject knowledge.",
}

OUTLINE_SCHEMA: dict[str, Any] = {
  "type": "object",
  "required": ["title", "lessons"],
  "properties": {
    "title": {"type": "string"},
    "description": {"type": "string"},
    "lessons": {
      "type": "array",
      "items": {
        "type": "object",
        "required": ["title", "sections"],
        "properties": {
          "title": {"type": "string"},
          "summary": {"type": "string"},
          "sections": {"type": "array", "items": {"type": "object", "required": ["title"], "properties": {"title": {"type": "string"}, "summary": {"type": "string"}}}},
        },
      },
    },
  },
}

SECTION_SCHEMA: dict[str, Any] = {
  "type": "object",
  "required": ["title", "content"],
  "properties": {"title": {"type": "string"}, "content": {"type": "string"}, "key_points": {"type": "array", "items": {"type": "string"}}},
}

ASSESSMENT_SCHEMA: dict[str, Any] = {
  "type": "object",
  "required": ["questions"],
  "properties": {
    "questions": {
      "type": "array",
      "items": {
        "type": "object",
        "required": ["prompt", "answer"],
        "properties": {"prompt": {"type": "string"}, "options": {"type": "array", "items": {"type": "string"}}, "answer": {"type": "string"}, "explanation": {"type": "string"}},
      },
    }
  },
}

MEDIA_SCHEMA: dict[str, Any] = {
  "type": "object",
  "required": ["items"],
  "properties": {"items": {"type": "array", "items": {"type": "object", "required": ["kind", "description"], "properties": {"kind": {"type": "string"}, "description": {"type": "string"}}}}},
}


def _mode_guidance(request: dict[str, Any]) -> str:
  return _MODE_GUIDANCE.get(str(request.get("mode") or "general"), _MODE_GUIDANCE["general"])


def build_outline_prompt(request: dict[str, Any]) -> str:
  lines = [
    f"Create a course outline titled '{request.get('title')}'.",
    f"Academic level: {request.get('academic_level') or 'college'}. Content depth: {request.get('depth') or 'detailed'}.",
    f"The outline must contain exactly {request.get('lesson_count') or 4} lessons, each with one or more sections.",
    _mode_guidance(request),
  ]
  if request.get("description"):
    lines.append(f"Course description: {request['description']}")
  return "\n".join(lines)


def build_section_prompt(request: dict[str, Any], *, lesson: dict[str, Any], section: dict[str, Any]) -> str:
  return "\n".join(
    [
      f"Write the section '{section.get('title')}' of the lesson '{lesson.get('title')}' in the course '{request.get('title')}'.",
      f"Section summary: {section.get('summary') or 'n/a'}.",
      f"Academic level: {request.get('academic_level') or 'college'}. Content depth: {request.get('depth') or 'detailed'}.",
      _mode_guidance(request),
    ]
  )


def build_assessment_prompt(request: dict[str, Any], *, lesson: dict[str, Any], sections: list[dict[str, Any]]) -> str:
  covered = "\n".join(f"- {section.get('title')}: {str(section.get('content') or '')[:500]}" for section in sections)
  return "\n".join(
    [
      f"Write assessment questions for the lesson '{lesson.get('title')}' of the course '{request.get('title')}'.",
      f"Academic level: {request.get('academic_level') or 'college'}.",
      "Only assess material covered by these sections:",
      covered or "- (no section content available)",
    ]
  )


def build_media_prompt(request: dict[str, Any], *, lesson: dict[str, Any], sections: list[dict[str, Any]]) -> str:
  titles = ", ".join(str(section.get("title")) for section in sections)
  return f"Suggest illustrations or diagrams for the lesson '{lesson.get('title')}' of the course '{request.get('title')}' covering: {titles}."
