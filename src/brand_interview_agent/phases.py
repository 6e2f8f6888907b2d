"""Phase plan and state machine for the brand interview."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .conversation import Message

COMPLETE_PHASE = "complete"


class UnknownPhaseError(RuntimeError):
    """Raised when a phase id is not part of the configured plan."""


@dataclass(frozen=True, slots=True)
class PhaseDefinition:
    """Represents one stage of the interview."""

    id: str
    label: str
    target_questions: int = 3
    report_required: bool = True
    catalog: Tuple[str, ...] = ()


PHASE_PLAN: List[PhaseDefinition] = [
    PhaseDefinition(
        id="discovery",
        label="Discovery",
        catalog=(
            "When customers ask why they should choose your business over "
            "competitors",
            "What three principles or beliefs guide how you run your "
            "business and treat your",
            "If your business were a person walking into a networking "
            "event, how would they",
        ),
    ),
    PhaseDefinition(
        id="messaging",
        label="Messaging",
        catalog=(
            "If you had to explain what makes your business special in one "
            "short sentence",
            "When you talk about your business, do you tend to be more "
            "casual and friendly",
            "Look at your website, social media, and any marketing "
            "materials. Are you telling",
        ),
    ),
    PhaseDefinition(
        id="audience",
        label="Audience",
        catalog=(
            "Think about your favorite customer – the type you wish you "
            "had more of",
            "What are the three biggest problems or challenges that your "
            "best customers",
            "When you look at your recent social media posts or emails to "
            "customers",
        ),
    ),
]


def _normalize_prompt(text: str) -> str:
    text = text.replace("*", "").replace("–", "-").replace("—", "-")
    return re.sub(r"\s+", " ", text).strip().lower()


def _empty_reports() -> Dict[str, str]:
    return {}


@dataclass(slots=True)
class PhaseProgress:
    """Progress of a single phase for display."""

    id: str
    label: str
    status: str
    percent: float
    report_available: bool


@dataclass(slots=True)
class ProgressSnapshot:
    """Overall interview progress derived from phase state."""

    total_percent: float
    phases: List[PhaseProgress]
    question_count: int
    is_complete: bool


@dataclass(slots=True)
class PhaseStateMachine:
    """Tracks the current phase and advances it when reports arrive.

    Advancement is driven only by reports: a phase moves on once a report
    has been attributed to it. The question count is a progress signal
    derived from the transcript and never triggers a transition.
    """

    phases: Sequence[PhaseDefinition] = field(
        default_factory=lambda: list(PHASE_PLAN)
    )
    current_phase: str = ""
    reports: Dict[str, str] = field(default_factory=_empty_reports)

    def __post_init__(self) -> None:
        if not self.phases:
            raise ValueError("At least one phase must be configured.")
        if not self.current_phase:
            self.current_phase = self.phases[0].id
        elif (
            self.current_phase != COMPLETE_PHASE
            and self.current_phase not in self.phase_ids
        ):
            raise UnknownPhaseError(
                f"Unknown interview phase: {self.current_phase}"
            )

    @classmethod
    def restore(
        cls,
        phases: Sequence[PhaseDefinition],
        current_phase: str,
        reports: Mapping[str, str],
    ) -> "PhaseStateMachine":
        return cls(
            phases=phases,
            current_phase=current_phase,
            reports=dict(reports),
        )

    @property
    def phase_ids(self) -> List[str]:
        return [phase.id for phase in self.phases]

    def is_complete(self) -> bool:
        return self.current_phase == COMPLETE_PHASE

    def definition(self, phase_id: str) -> PhaseDefinition:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise UnknownPhaseError(f"Unknown interview phase: {phase_id}")

    def next_phase(self, phase_id: str) -> Optional[str]:
        ids = self.phase_ids
        if phase_id not in ids:
            raise UnknownPhaseError(f"Unknown interview phase: {phase_id}")
        index = ids.index(phase_id)
        if index + 1 >= len(ids):
            return None
        return ids[index + 1]

    def record_report(self, phase_id: str, text: str) -> Optional[str]:
        """Store ``text`` for ``phase_id`` and return the following phase.

        Returns ``None`` when ``phase_id`` is the last phase; the machine is
        then complete. A report for an earlier phase overwrites the stored
        text without moving the current phase backwards.
        """

        following = self.next_phase(phase_id)
        self.reports[phase_id] = text
        if self.is_complete():
            return following
        target = COMPLETE_PHASE if following is None else following
        if self._rank(target) > self._rank(self.current_phase):
            self.current_phase = target
        return following

    def question_count(self, messages: Iterable[Message]) -> int:
        """Count assistant turns in the current phase that match its catalog."""

        if self.is_complete():
            return 0
        prompts = [
            _normalize_prompt(prompt)
            for prompt in self.definition(self.current_phase).catalog
        ]
        matched = set()
        for message in messages:
            if message.role != "assistant":
                continue
            if message.phase != self.current_phase:
                continue
            content = _normalize_prompt(message.content)
            for index, prompt in enumerate(prompts):
                if prompt and prompt in content:
                    matched.add(index)
        return len(matched)

    def progress(self, question_count: int) -> ProgressSnapshot:
        total = len(self.phases)
        current_index = self._rank(self.current_phase)
        entries: List[PhaseProgress] = []
        for index, phase in enumerate(self.phases):
            if index < current_index:
                status, percent = "completed", 100.0
            elif index == current_index:
                status = "active"
                percent = self._fraction(question_count, phase) * 100
            else:
                status, percent = "pending", 0.0
            entries.append(
                PhaseProgress(
                    id=phase.id,
                    label=phase.label,
                    status=status,
                    percent=round(percent, 2),
                    report_available=bool(self.reports.get(phase.id)),
                )
            )
        if self.is_complete():
            total_percent = 100.0
        else:
            phase = self.phases[current_index]
            completed = current_index / total
            partial = self._fraction(question_count, phase) / total
            total_percent = min(round((completed + partial) * 100, 2), 100.0)
        return ProgressSnapshot(
            total_percent=total_percent,
            phases=entries,
            question_count=question_count,
            is_complete=self.is_complete(),
        )

    @staticmethod
    def _fraction(question_count: int, phase: PhaseDefinition) -> float:
        if phase.target_questions <= 0:
            return 0.0
        return min(question_count / phase.target_questions, 1.0)

    def _rank(self, phase_id: str) -> int:
        if phase_id == COMPLETE_PHASE:
            return len(self.phases)
        return self.phase_ids.index(phase_id)
