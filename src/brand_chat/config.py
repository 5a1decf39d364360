"""Configuration models for the brand chat service."""

from __future__ import annotations

import json
import os
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

DEFAULT_HANDOFF_SECTIONS: dict[str, list[str]] = {
    "contact": ["name", "phone", "email"],
    "preferred_meeting": ["mode", "date", "time"],
    "matter": ["category", "urgency"],
    "request": ["summary", "details"],
    "property": ["transaction_type", "property_type", "location", "budget"],
}


class RunConfig(BaseModel):
    """Configures run polling, timeouts and client keep-alive cadence."""

    poll_interval_seconds: float = Field(default=1.2, gt=0.0)
    run_timeout_seconds: float = Field(default=180.0, gt=0.0)
    keepalive_interval_seconds: float = Field(default=20.0, gt=0.0)
    message_lookback: int = Field(default=10, ge=1, le=100)


class RetrievalConfig(BaseModel):
    """Configures knowledge-base lookups used to augment run instructions."""

    top_k: int = Field(default=5, ge=1, le=20)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)


class BrandConfig(BaseModel):
    """Tenant configuration: persona, tools and handoff requirements."""

    model_config = ConfigDict(extra="allow")

    label: str | None = None
    assistant_id: str | None = None
    instructions: str | None = None
    office_city: str = "Türkiye"
    practice_areas: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=lambda: ["submit_handoff"])
    handoff_sections: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_HANDOFF_SECTIONS.items()}
    )
    required_fields: list[str] = Field(default_factory=list)
    email_to: str | None = None
    subject_prefix: str | None = None
    knowledge: list[str] = Field(default_factory=list)

    def display_name(self, brand_key: str) -> str:
        if self.label:
            return self.label
        if self.subject_prefix:
            return self.subject_prefix.strip("[]") or brand_key
        return brand_key


class AppSettings(BaseModel):
    """Process-level settings, read from the environment."""

    openai_api_key: str | None = None
    openai_base: str = "https://api.openai.com/v1"
    assistant_id: str | None = None
    brands: dict[str, BrandConfig] = Field(default_factory=dict)
    sheets_webhook_url: str | None = None
    log_level: str = "INFO"
    log_format: str = "console"
    dedup_capacity: int | None = Field(default=None, ge=1)
    run: RunConfig = Field(default_factory=RunConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "AppSettings":
        env = os.environ if environ is None else environ
        run = RunConfig(
            poll_interval_seconds=float(env.get("RUN_POLL_INTERVAL", "1.2")),
            run_timeout_seconds=float(env.get("RUN_TIMEOUT", "180")),
            keepalive_interval_seconds=float(env.get("SSE_KEEPALIVE", "20")),
        )
        capacity = env.get("DEDUP_CAPACITY")
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_base=env.get("OPENAI_BASE", "https://api.openai.com/v1"),
            assistant_id=env.get("ASSISTANT_ID") or None,
            brands=parse_brands(env.get("BRAND_JSON") or env.get("BRANDS_JSON") or "{}"),
            sheets_webhook_url=env.get("SHEETS_WEBHOOK_URL") or None,
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "console"),
            dedup_capacity=int(capacity) if capacity else None,
            run=run,
        )


def parse_brands(raw: str) -> dict[str, BrandConfig]:
    """Parse the brand allow-list JSON; invalid input yields an empty allow-list."""
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("brand_json_invalid", error=str(exc))
        return {}
    if not isinstance(payload, dict):
        logger.warning("brand_json_not_object", kind=type(payload).__name__)
        return {}

    brands: dict[str, BrandConfig] = {}
    for key, value in payload.items():
        if not isinstance(value, dict):
            logger.warning("brand_entry_skipped", brand_key=key)
            continue
        brands[key] = BrandConfig.model_validate(value)
    logger.info("brands_loaded", keys=sorted(brands))
    return brands
