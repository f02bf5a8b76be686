"""DeepResearch - background research job runner

Simple CLI for researching an approved outline.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from deepresearch.agents.coordinator import RunCoordinator, create_run
from deepresearch.agents.job_runner import JobRunner
from deepresearch.config import settings
from deepresearch.models.errors import InvalidOutline
from deepresearch.models.run import SectionSpec
from deepresearch.services.backoff import BackoffPolicy
from deepresearch.services.report_store import save_section_report
from deepresearch.tools.responses_client import ResponsesClient


def parse_section(raw: str, index: int) -> SectionSpec:
    """``"Title: description"`` -> SectionSpec with a positional id."""
    title, _, description = raw.partition(":")
    return SectionSpec(id=f"section-{index}", title=title.strip(), description=description.strip())


def load_outline(path: str) -> tuple[str | None, list[SectionSpec]]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    sections = [SectionSpec(**item) for item in data.get("sections", [])]
    return data.get("topic"), sections


async def run_research(topic: str, sections: list[SectionSpec]):
    """Research every section of the outline, printing progress."""
    print(f"Research topic: {topic}")
    print("-" * 50)

    run = create_run(topic, sections)
    client = ResponsesClient.from_settings(settings)
    runner = JobRunner(
        client,
        backoff=BackoffPolicy(base_seconds=settings.backoff_base_seconds),
        max_attempts=settings.job_max_attempts,
        poll_interval=settings.poll_interval_seconds,
        timeout=settings.job_timeout_seconds,
        progress_tick_polls=settings.progress_tick_polls,
        preview_chars=settings.preview_chars,
    )
    coordinator = RunCoordinator(
        run,
        runner,
        save_report=save_section_report,
        heartbeat_after=settings.heartbeat_after_seconds,
    )

    async for event in coordinator.events():
        if event.type == "outline":
            print(f"\n[*] Outline ({len(event.sections)} sections):")
            for i, section in enumerate(event.sections, 1):
                print(f"  {i}. {section.title}")

        elif event.type == "run-status":
            print(f"\n[~] {event.phase.value}: {event.phase_message} "
                  f"({event.completed_sections}/{event.total_sections})")

        elif event.type == "section-status":
            line = f"  [{event.status.value}] {event.section_title}"
            if event.error:
                line += f" - {event.error}"
            elif event.progress and event.progress.markdown_path:
                line += f" -> {event.progress.markdown_path}"
            print(line)

        elif event.type == "heartbeat":
            print(".", end="", flush=True)

    return run


def main():
    parser = argparse.ArgumentParser(description="DeepResearch background research runner")
    parser.add_argument("--topic", "-t", help="Parent research topic")
    parser.add_argument(
        "--section", "-s", action="append", default=[],
        help='Section as "Title: description" (repeatable)',
    )
    parser.add_argument("--outline", "-o", help="JSON file with {topic, sections:[{id,title,description}]}")

    args = parser.parse_args()

    topic = args.topic
    sections = [parse_section(raw, i) for i, raw in enumerate(args.section, 1)]
    if args.outline:
        outline_topic, sections = load_outline(args.outline)
        topic = topic or outline_topic

    try:
        run = asyncio.run(run_research(topic or "", sections))
    except InvalidOutline as e:
        parser.error(str(e))
    except RuntimeError as e:
        print(f"[!] Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0 if run.phase.value == "complete" else 2)


if __name__ == "__main__":
    main()
