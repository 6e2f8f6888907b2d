"""Split assistant replies into chat prose and embedded report blocks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

REPORT_FENCE_RE = re.compile(
    r"```[ \t]*report\b[^\n]*\n(?P<body>.*?)(?:```|\Z)",
    re.IGNORECASE | re.DOTALL,
)

# An already emphasized question, or a run of sentence text ending in "?".
_QUESTION_RE = re.compile(r"\*\*[^*\n]+?\?\*\*|[^.!?\n*]+\?")

SOFT_BREAK = "  \n"

# Existing Markdown links and bare URLs are never reformatted.
_PROTECTED_RE = re.compile(r"\[[^\]]*\]\([^)]*\)|https?://\S+")
_PLACEHOLDER_RE = re.compile(r"\x00(\d+)\x00")


def _empty_segments() -> List[str]:
    return []


@dataclass(slots=True)
class ParsedResponse:
    """Result of splitting one assistant reply."""

    visible_text: str
    report_segments: List[str] = field(default_factory=_empty_segments)

    @property
    def has_reports(self) -> bool:
        return bool(self.report_segments)


class ResponseParser:
    """Extracts ```report fences and normalizes the remaining prose."""

    def __init__(self, promo_links: Optional[Mapping[str, str]] = None) -> None:
        self._links = [
            (
                re.compile(re.escape(phrase), re.IGNORECASE),
                url,
            )
            for phrase, url in sorted(
                (promo_links or {}).items(),
                key=lambda item: len(item[0]),
                reverse=True,
            )
        ]

    def parse(self, raw_text: str) -> ParsedResponse:
        segments: List[str] = []

        def _collect(match: re.Match[str]) -> str:
            body = match.group("body").strip()
            if body:
                segments.append(body)
            return "\n"

        remaining = REPORT_FENCE_RE.sub(_collect, raw_text or "")
        return ParsedResponse(
            visible_text=self.format_visible_text(remaining),
            report_segments=segments,
        )

    def format_visible_text(self, text: str) -> str:
        """Apply the chat presentation rules to report-free text."""

        lines = [line.rstrip() for line in text.strip().split("\n")]
        text = SOFT_BREAK.join(line for line in lines if line.strip())
        protected: List[str] = []

        def _shield(fragment: str) -> str:
            protected.append(fragment)
            return f"\x00{len(protected) - 1}\x00"

        text = _PROTECTED_RE.sub(lambda match: _shield(match.group(0)), text)
        text = _QUESTION_RE.sub(_emphasize, text)
        for pattern, url in self._links:
            text = pattern.sub(
                lambda match, url=url: _shield(f"[{match.group(0)}]({url})"),
                text,
            )
        return _PLACEHOLDER_RE.sub(
            lambda match: protected[int(match.group(1))], text
        )


def _emphasize(match: re.Match[str]) -> str:
    sentence = match.group(0)
    if sentence.startswith("**"):
        return sentence
    body = sentence.lstrip()
    if not body or body == "?":
        return sentence
    lead = sentence[: len(sentence) - len(body)]
    return f"{lead}**{body}**"


def parse_response(
    raw_text: str, promo_links: Optional[Mapping[str, str]] = None
) -> ParsedResponse:
    """Convenience wrapper around :meth:`ResponseParser.parse`."""

    return ResponseParser(promo_links).parse(raw_text)
