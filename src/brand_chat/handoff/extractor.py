"""Handoff candidate producers and assistant-text cleaning."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import structlog

from brand_chat.types import HandoffCandidate

logger = structlog.get_logger(__name__)

HANDOFF_KIND = "customer_request"

_FENCED_BLOCK = re.compile(r"```[\s\S]*?```")
_UNTERMINATED_FENCE = re.compile(r"```[\s\S]*$")
_HANDOFF_BLOCK = re.compile(
    r"```[ \t]*(?P<label>[\w-]*)[^\n]*\n(?P<body>[\s\S]*?)```"
)
_HANDOFF_LABELS = {"handoff", "lead", "handoff-json", "lead-json"}

_PHONE = re.compile(
    r"(?<!\d)(?:\+?90[\s-]?)?0?\(?[2-5]\d{2}\)?[\s-]?\d{3}[\s-]?\d{2}[\s-]?\d{2}(?!\d)"
)
_NAME_WORDS = r"[A-ZÇĞİÖŞÜ][a-zçğıöşü]+(?:[ \t]+[A-ZÇĞİÖŞÜ][a-zçğıöşü]+){0,3}"
_LABELLED_NAME = re.compile(
    r"(?<!\w)(?:[İIi]leti[şs]im|[Aa]d[ıi]?[ \t]*[Ss]oyad[ıi]?|[İIi]sim|[Aa]d[ıi]m)"
    r"[ \t]*:[ \t]*(?P<name>" + _NAME_WORDS + ")"
)
# Unlabelled self-introduction, trusted only on the line carrying the phone.
_INTRODUCED_NAME = re.compile(
    r"(?<!\w)(?:[Aa]d[ıi]m|[Bb]enim ad[ıi]m|[Bb]en)[ \t]+(?P<name>" + _NAME_WORDS + ")"
)
_NAME_BEFORE_PHONE = re.compile(
    r"(?P<name>[A-ZÇĞİÖŞÜ][a-zçğıöşü]+(?:[ \t]+[A-ZÇĞİÖŞÜ][a-zçğıöşü]+)+)"
    r"[ \t]*[,:\-]?[ \t]*(?:[Tt]el(?:efon)?[ \t]*[:\-]?[ \t]*)?$"
)
_CONTACT_INTENT = re.compile(r"randevu|avukat|iletişime geç|arasın|ön görüşme|beni ara")

# Ordered by category; the earliest keyword occurrence in the text wins.
_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "satılık": ("satılık", "satilik", "satın al", "satmak", "satıyorum", "satış"),
    "kiralık": ("kiralık", "kiralik", "kiraya", "kiracı", "kira"),
    "arsa": ("arsa", "arazi", "tarla", "imarlı"),
    "ticari": ("dükkan", "dükkân", "ofis", "depo", "fabrika", "işyeri", "iş yeri", "devren", "ticari", "mağaza"),
}
_CATEGORY_SUMMARIES = {
    "satılık": "Satılık konut talebi",
    "kiralık": "Kiralık konut talebi",
    "arsa": "Arsa / arazi talebi",
    "ticari": "Ticari gayrimenkul talebi",
    "diger": "Emlak talebi",
}
FALLBACK_CATEGORY = "diger"


def turkish_lower(text: str) -> str:
    return text.replace("İ", "i").replace("I", "ı").lower()


def strip_fenced(text: str) -> str:
    """Remove every fenced block (and a dangling unterminated one)."""
    cleaned = _FENCED_BLOCK.sub("", text or "")
    cleaned = _UNTERMINATED_FENCE.sub("", cleaned)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


def has_contact_intent(text: str) -> bool:
    return bool(_CONTACT_INTENT.search(turkish_lower(text or "")))


@dataclass(slots=True)
class ExtractionContext:
    """Inputs available to candidate producers for one turn."""

    user_text: str = ""
    raw_text: str = ""
    tool_arguments: dict[str, Any] | None = None


class CandidateProducer(ABC):
    """One strategy for turning conversation output into a handoff candidate."""

    path: str = ""

    @abstractmethod
    def produce(self, context: ExtractionContext) -> HandoffCandidate | None:
        """Return a candidate, or None when this strategy finds nothing."""


class ToolCallProducer(CandidateProducer):
    """Candidate from the arguments of an explicit handoff tool call."""

    path = "tool_call"

    def produce(self, context: ExtractionContext) -> HandoffCandidate | None:
        if context.tool_arguments is None:
            return None
        kind, payload = _split_envelope(context.tool_arguments)
        return HandoffCandidate(kind=kind, payload=payload, path=self.path)


class FencedBlockProducer(CandidateProducer):
    """Candidate from a ```handoff fenced JSON block in the assistant text."""

    path = "fenced_block"

    def produce(self, context: ExtractionContext) -> HandoffCandidate | None:
        for match in _HANDOFF_BLOCK.finditer(context.raw_text or ""):
            if match.group("label").lower() not in _HANDOFF_LABELS:
                continue
            try:
                body = json.loads(match.group("body"))
            except json.JSONDecodeError as exc:
                logger.warning("handoff_block_unparsable", error=str(exc))
                continue
            if not isinstance(body, dict):
                continue
            kind, payload = _split_envelope(body)
            return HandoffCandidate(kind=kind, payload=payload, path=self.path)
        return None


class HeuristicProducer(CandidateProducer):
    """Candidate inferred from category vocabulary and a phone-like token."""

    path = "heuristic"

    def produce(self, context: ExtractionContext) -> HandoffCandidate | None:
        combined = "\n".join(part for part in (context.user_text, context.raw_text) if part)
        return infer_handoff_from_text(combined, user_text=context.user_text, path=self.path)


class HandoffExtractor:
    """Runs producers in confidence order; the first candidate wins."""

    def __init__(self, producers: list[CandidateProducer] | None = None) -> None:
        self.producers = producers or [
            ToolCallProducer(),
            FencedBlockProducer(),
            HeuristicProducer(),
        ]

    def extract(self, context: ExtractionContext) -> HandoffCandidate | None:
        for producer in self.producers:
            candidate = producer.produce(context)
            if candidate is not None:
                logger.info("handoff_candidate", path=candidate.path, kind=candidate.kind)
                return candidate
        return None


def infer_handoff_from_text(
    text: str, *, user_text: str | None = None, path: str = "heuristic"
) -> HandoffCandidate | None:
    """Synthesize a lead from free text when it carries a phone number."""

    phone_match = _PHONE.search(text or "")
    if phone_match is None:
        return None

    category = classify_category(text)
    name = _find_name(text, phone_match, user_text)
    source_text = user_text if user_text is not None else text
    summary = _build_summary(category, source_text, phone_match.group(0))
    payload = {
        "contact": {"name": name, "phone": phone_match.group(0).strip()},
        "matter": {"category": category, "urgency": "normal"},
        "request": {
            "summary": summary,
            "details": (source_text or "").strip()[:500],
        },
        "property": {
            "transaction_type": category if category in ("satılık", "kiralık") else "",
        },
    }
    return HandoffCandidate(kind=HANDOFF_KIND, payload=payload, path=path)


def classify_category(text: str) -> str:
    lowered = turkish_lower(text or "")
    best: tuple[int, str] | None = None
    for category, keywords in _CATEGORY_KEYWORDS.items():
        for keyword in keywords:
            position = lowered.find(keyword)
            if position >= 0 and (best is None or position < best[0]):
                best = (position, category)
    return best[1] if best else FALLBACK_CATEGORY


def _find_name(text: str, phone_match: re.Match[str], user_text: str | None) -> str:
    line_start = text.rfind("\n", 0, phone_match.start()) + 1
    before_phone = text[line_start : phone_match.start()]
    for pattern in (_INTRODUCED_NAME, _NAME_BEFORE_PHONE):
        found = pattern.search(before_phone)
        if found:
            return found.group("name").strip()
    for source in (user_text, text):
        labelled = _LABELLED_NAME.search(source or "")
        if labelled:
            return labelled.group("name").strip()
    return ""


def _build_summary(category: str, user_text: str, phone: str) -> str:
    label = _CATEGORY_SUMMARIES[category]
    for line in (user_text or "").splitlines():
        line = line.strip()
        if line and phone not in line and not _LABELLED_NAME.match(line):
            return f"{label}: {line[:160]}"
    return label


def _split_envelope(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    payload = body.get("payload")
    if isinstance(payload, dict):
        kind = body.get("handoff") or body.get("kind") or HANDOFF_KIND
        return str(kind), payload
    return HANDOFF_KIND, dict(body)
