"""Offer Sentinel configuration.

Mirrors the pydantic-settings pattern used by the API sidecar.
Loads from environment variables (prefix ``OFFERS_``) and a .env file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class OfferSettings(BaseSettings):
    """Configuration for ingestion, allocation and the HTTP surface."""

    # ----- Ingestion -----
    write_batch_size: int = Field(
        default=1000,
        description="Buffered offers are flushed to the store at this size.",
    )
    max_duplicate_examples: int = Field(
        default=3,
        description="In-file duplicate examples kept in the report.",
    )
    max_logged_failures: int = Field(
        default=10,
        description="Row validation failures logged and kept in the report.",
    )
    supplier_key_rule: Literal["code", "name"] = Field(
        default="code",
        description="How the supplier key is derived: business code or normalized name.",
    )

    # ----- Allocation -----
    unnamed_product_label: str = Field(
        default="Unnamed product",
        description="Shown when a product name is missing or equals the supplier name.",
    )

    # ----- Store (Supabase PostgREST) -----
    supabase_url: str = Field(
        default="",
        description="Supabase project URL. Empty means in-memory catalog.",
    )
    supabase_service_key: str = Field(
        default="",
        description="Supabase service role key.",
    )

    # ----- Server -----
    host: str = Field(default="0.0.0.0", description="Bind host.")
    port: int = Field(default=8002, description="Bind port.")
    dev_mode: bool = Field(
        default=False,
        description="Dev mode: enables CORS wildcard.",
    )
    max_upload_mb: int = Field(
        default=50,
        description="Maximum accepted upload size in megabytes.",
    )

    model_config = {
        "env_prefix": "OFFERS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> OfferSettings:
    """Get cached settings singleton."""
    return OfferSettings()
