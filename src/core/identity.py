"""
DVM identity: keys, relays, supported job kinds, model defaults and pricing.

The identity is loaded from configuration and is immutable; the listener
snapshots it at start() so every job runs with the settings that were in
effect when listening began.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from nostr_tools import validate_keypair
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .events import derive_public_key
from .nip90 import JOB_REQUEST_KIND_MAX, JOB_REQUEST_KIND_MIN, is_job_request_kind

PRIVATE_KEY_ENV = "DVM_PRIVATE_KEY"

DEFAULT_RELAYS = ["wss://relay.damus.io", "wss://relay.nostr.band"]
DEFAULT_JOB_KINDS = [5050, 5100]


def _get_private_key_from_env() -> Optional[str]:
    """Load private key from DVM_PRIVATE_KEY environment variable."""
    return os.getenv(PRIVATE_KEY_ENV) or None


class TextGenerationConfig(BaseModel):
    """Default inference parameters and pricing for text generation jobs."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str = Field(default="gemma2:1b", min_length=1, description="Default model")
    max_tokens: int = Field(default=512, ge=1, description="Maximum completion tokens")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_k: int = Field(default=40, ge=1)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    frequency_penalty: float = Field(default=0.5, ge=-2.0, le=2.0)
    min_price_sats: int = Field(default=10, ge=0, description="Minimum price per job")
    price_per_1k_tokens: float = Field(default=2.0, ge=0.0, description="Sats per 1000 tokens")

    def generation_defaults(self) -> dict[str, Any]:
        """Parameters a job request may override through ``param`` tags."""
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
        }


class DvmIdentity(BaseModel):
    """The single service identity this DVM acts as."""

    model_config = ConfigDict(frozen=True)

    private_key: Optional[str] = Field(
        default_factory=_get_private_key_from_env,
        description="Private key hex (from DVM_PRIVATE_KEY env)",
        repr=False,
    )
    public_key: Optional[str] = Field(
        default=None, description="Public key hex (derived from private key if omitted)"
    )
    relays: list[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    supported_job_kinds: list[int] = Field(default_factory=lambda: list(DEFAULT_JOB_KINDS))
    text_generation: TextGenerationConfig = Field(default_factory=TextGenerationConfig)

    @field_validator("private_key", mode="before")
    @classmethod
    def load_private_key_from_env(cls, v: Optional[str]) -> Optional[str]:
        """Load private key from environment if not provided."""
        if not v:
            return _get_private_key_from_env()
        return v

    @field_validator("relays")
    @classmethod
    def strip_relays(cls, v: list[str]) -> list[str]:
        relays = []
        for url in v:
            url = url.strip()
            if url and url not in relays:
                relays.append(url)
        return relays

    @field_validator("supported_job_kinds")
    @classmethod
    def validate_job_kinds(cls, v: list[int]) -> list[int]:
        for kind in v:
            if not is_job_request_kind(kind):
                raise ValueError(
                    f"job kind {kind} outside {JOB_REQUEST_KIND_MIN}-{JOB_REQUEST_KIND_MAX}"
                )
        return sorted(set(v))

    @model_validator(mode="before")
    @classmethod
    def derive_missing_public_key(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        private_key = data.get("private_key") or _get_private_key_from_env()
        if private_key and not data.get("public_key"):
            try:
                data = {**data, "public_key": derive_public_key(private_key)}
            except Exception as e:
                raise ValueError(f"invalid {PRIVATE_KEY_ENV}: {e}") from e
        return data

    @model_validator(mode="after")
    def validate_keypair_match(self) -> "DvmIdentity":
        """Validate that public and private keys match if both provided."""
        if self.public_key and self.private_key:
            if not validate_keypair(self.private_key, self.public_key):
                raise ValueError(f"{PRIVATE_KEY_ENV} and public_key do not match")
        return self

    @property
    def result_kinds(self) -> list[int]:
        """Result kinds this identity publishes (request kind + 1000)."""
        return [kind + 1000 for kind in self.supported_job_kinds]
