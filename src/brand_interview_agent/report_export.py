"""Render collected phase reports for download."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from .conversation import Conversation
from .phases import PHASE_PLAN, PhaseDefinition

logger = logging.getLogger(__name__)

MISSING_REPORT = "No report was produced for this phase."


@dataclass(slots=True)
class ReportArtifacts:
    """Files written for a conversation's reports."""

    markdown_path: Path
    phases_included: List[str]


def render_report_markdown(
    conversation: Conversation,
    phases: Sequence[PhaseDefinition] = PHASE_PLAN,
    *,
    only: Optional[str] = None,
) -> str:
    """Combine the stored reports into one Markdown document."""

    lines: List[str] = [f"# {conversation.subject_name} Brand Report", ""]
    for phase in phases:
        if only is not None and phase.id != only:
            continue
        body = conversation.reports.get(phase.id, "").strip()
        lines.append(f"## {phase.label} Report")
        lines.append("")
        lines.append(body or MISSING_REPORT)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def export_reports(
    conversation: Conversation,
    output_dir: Path,
    phases: Sequence[PhaseDefinition] = PHASE_PLAN,
    *,
    only: Optional[str] = None,
) -> ReportArtifacts:
    """Persist the rendered reports as Markdown under ``output_dir``."""

    if only is not None and only not in conversation.reports:
        raise ValueError(f"No report available for phase '{only}'.")
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    suffix = f"_{only}" if only else ""
    filename = f"brand_report_{conversation.id}{suffix}_{timestamp}.md"
    output_dir.mkdir(parents=True, exist_ok=True)
    markdown_path = output_dir / filename
    markdown_path.write_text(
        render_report_markdown(conversation, phases, only=only),
        encoding="utf-8",
    )
    included = [
        phase.id
        for phase in phases
        if phase.id in conversation.reports and only in (None, phase.id)
    ]
    logger.info(
        "Exported %d report(s) for %s to %s",
        len(included),
        conversation.id,
        markdown_path,
    )
    return ReportArtifacts(markdown_path=markdown_path, phases_included=included)
