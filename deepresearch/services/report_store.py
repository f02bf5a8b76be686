from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from deepresearch.config import settings


def _output_dir(output_dir: str | Path | None = None) -> Path:
    return Path(output_dir or settings.research_output_dir)


def slugify(text: str) -> str:
    slug = text.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip()


def _frontmatter(subtopic: str, parent_topic: str, section_number: int, created_at: str) -> str:
    return (
        "---\n"
        f'title: "{subtopic}"\n'
        f'parent_topic: "{parent_topic}"\n'
        f"section: {section_number}\n"
        f"created_at: {created_at}\n"
        "generated_by: deep-research-agent\n"
        "---\n\n"
    )


def save_markdown_report(
    content: str,
    *,
    subtopic: str,
    parent_topic: str,
    section_number: int,
    output_dir: str | Path | None = None,
) -> Path:
    """Write one section report as ``<topic-slug>/<NN>_<subtopic-slug>.md``."""
    topic_dir = _output_dir(output_dir) / slugify(parent_topic)
    topic_dir.mkdir(parents=True, exist_ok=True)

    path = topic_dir / f"{section_number:02d}_{slugify(subtopic)}.md"
    created_at = datetime.now(timezone.utc).isoformat()
    path.write_text(
        _frontmatter(subtopic, parent_topic, section_number, created_at) + content,
        encoding="utf-8",
    )
    logger.info(f"Saved markdown report: {path}")
    return path


def save_section_report(content: str, section_metadata: dict[str, Any]) -> str:
    """``save(content, section_metadata) -> path`` adapter used by the run coordinator."""
    path = save_markdown_report(
        content,
        subtopic=str(section_metadata["subtopic"]),
        parent_topic=str(section_metadata["parent_topic"]),
        section_number=int(section_metadata["section_number"]),
        output_dir=section_metadata.get("output_dir"),
    )
    return str(path)


def list_research_topics(output_dir: str | Path | None = None) -> list[str]:
    root = _output_dir(output_dir)
    if not root.exists():
        return []
    return sorted(entry.name for entry in root.iterdir() if entry.is_dir())


def list_topic_reports(topic_slug: str, output_dir: str | Path | None = None) -> list[str]:
    topic_dir = _output_dir(output_dir) / topic_slug
    if not topic_dir.is_dir():
        return []
    return sorted(entry.name for entry in topic_dir.iterdir() if entry.suffix == ".md")
