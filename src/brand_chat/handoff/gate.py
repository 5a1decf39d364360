"""Handoff sanitization, minimum-data validation and per-thread dedup."""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
import unicodedata
from collections import OrderedDict
from typing import Any, Protocol

import structlog

from brand_chat.config import BrandConfig
from brand_chat.types import Handoff, HandoffCandidate

logger = structlog.get_logger(__name__)

MINIMUM_FIELDS = ("contact.name", "contact.phone", "request.summary")


class DedupStore(Protocol):
    """Per-thread record of delivered handoff fingerprints."""

    async def check_and_record(self, thread_id: str, fingerprint: str) -> bool:
        """Record the fingerprint; return False when it was already present."""


class InMemoryDedupStore:
    """Process-local dedup record guarded by a single lock.

    With `capacity=None` threads are never evicted, so entries live for the
    process lifetime. A capacity evicts the least recently inserted thread.
    """

    def __init__(self, capacity: int | None = None) -> None:
        self._capacity = capacity
        self._entries: OrderedDict[str, set[str]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def check_and_record(self, thread_id: str, fingerprint: str) -> bool:
        async with self._lock:
            fingerprints = self._entries.get(thread_id)
            if fingerprints is None:
                fingerprints = set()
                self._entries[thread_id] = fingerprints
            if fingerprint in fingerprints:
                return False
            fingerprints.add(fingerprint)
            self._entries.move_to_end(thread_id)
            if self._capacity is not None:
                while len(self._entries) > self._capacity:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.info("dedup_thread_evicted", thread_id=evicted)
            return True


def sanitize_payload(payload: dict[str, Any], brand: BrandConfig) -> dict[str, dict[str, str]]:
    """Project a raw payload onto the brand's declared schema.

    Every declared field is present; missing or null values become "".
    Sections and fields the brand does not declare are dropped.
    """

    clean: dict[str, dict[str, str]] = {}
    for section, fields in brand.handoff_sections.items():
        raw_section = payload.get(section)
        if not isinstance(raw_section, dict):
            raw_section = {}
        clean[section] = {name: _scalar(raw_section.get(name)) for name in fields}
    return clean


def missing_fields(payload: dict[str, dict[str, str]], brand: BrandConfig) -> list[str]:
    required = list(MINIMUM_FIELDS) + [
        path for path in brand.required_fields if path not in MINIMUM_FIELDS
    ]
    missing: list[str] = []
    for path in required:
        section, _, name = path.partition(".")
        if not payload.get(section, {}).get(name, ""):
            missing.append(path)
    return missing


def fingerprint(payload: dict[str, dict[str, str]]) -> str:
    """Stable hash of normalized payload content."""
    normalized = {
        section: {name: _normalize_value(name, value) for name, value in fields.items()}
        for section, fields in payload.items()
    }
    encoded = json.dumps(normalized, ensure_ascii=False, sort_keys=True)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


class HandoffGate:
    """sanitize -> validate -> dedup for every candidate, whatever its path."""

    def __init__(self, dedup_store: DedupStore) -> None:
        self.dedup_store = dedup_store

    async def admit(
        self, thread_id: str, candidate: HandoffCandidate, brand: BrandConfig
    ) -> tuple[Handoff | None, str]:
        """Return the accepted handoff (or None) and the gate outcome.

        Outcomes: `accepted`, `incomplete`, `duplicate`. The fingerprint is
        recorded before the caller delivers, so a failed delivery is never
        retried by a later turn on the same thread.
        """

        clean = sanitize_payload(candidate.payload, brand)
        missing = missing_fields(clean, brand)
        if missing:
            logger.info(
                "handoff_gate_incomplete",
                thread_id=thread_id,
                path=candidate.path,
                missing=missing,
            )
            return None, "incomplete"

        digest = fingerprint(clean)
        if not await self.dedup_store.check_and_record(thread_id, digest):
            logger.info("handoff_gate_duplicate", thread_id=thread_id, path=candidate.path)
            return None, "duplicate"

        return (
            Handoff(kind=candidate.kind, payload=clean, path=candidate.path, fingerprint=digest),
            "accepted",
        )


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value).strip()


def _normalize_value(name: str, value: str) -> str:
    if name == "phone":
        digits = re.sub(r"\D", "", value)
        return digits[-10:] if len(digits) >= 10 else digits
    text = unicodedata.normalize("NFC", value)
    return " ".join(text.split()).casefold()
