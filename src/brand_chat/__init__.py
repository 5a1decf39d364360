"""Brand chat agent package."""

from .config import BrandConfig, RetrievalConfig, RunConfig

__all__ = ["BrandConfig", "RetrievalConfig", "RunConfig"]
