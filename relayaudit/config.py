"""Auditor configuration.

Resolution order (later wins): model defaults < CLI arguments <
environment variables. Environment keys follow
``RELAYAUDIT_<SECTION>__<KEY>``, e.g. ``RELAYAUDIT_RELAY__URL``.
"""

from __future__ import annotations

import os
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from relayaudit.auditor.extractors import DEFAULT_ASSET, available_modes

DEFAULT_RELAY_URL = "wss://relay.lawallet.ar"

# field name -> environment variable
ENV_KEYS = {
    "relay_url": "RELAYAUDIT_RELAY__URL",
    "connect_timeout": "RELAYAUDIT_RELAY__CONNECT_TIMEOUT",
    "receive_timeout": "RELAYAUDIT_RELAY__RECEIVE_TIMEOUT",
    "modes": "RELAYAUDIT_AUDIT__MODES",
    "page_limit": "RELAYAUDIT_AUDIT__PAGE_LIMIT",
    "round_delay": "RELAYAUDIT_AUDIT__ROUND_DELAY",
    "asset": "RELAYAUDIT_AUDIT__ASSET",
    "ledger_pubkey": "RELAYAUDIT_AUDIT__LEDGER_PUBKEY",
    "data_dir": "RELAYAUDIT_AUDIT__DATA_DIR",
    "poll_interval": "RELAYAUDIT_RUNTIME__POLL_INTERVAL",
    "max_consecutive_errors": "RELAYAUDIT_RUNTIME__MAX_CONSECUTIVE_ERRORS",
}


class AuditorConfig(BaseModel):
    """Settings for one auditor process."""

    relay_url: str = DEFAULT_RELAY_URL
    connect_timeout: float = Field(default=10.0, gt=0)
    receive_timeout: float | None = Field(default=30.0, gt=0)

    modes: list[str] = Field(default_factory=lambda: ["balance"])
    page_limit: int = Field(default=500, gt=0)
    round_delay: float = Field(default=0.1, ge=0)
    asset: str = DEFAULT_ASSET
    ledger_pubkey: str | None = None
    data_dir: str = "relayaudit/data"

    poll_interval: int = Field(default=0, ge=0, description="Seconds between cycles; 0 runs once")
    max_consecutive_errors: int = Field(default=10, gt=0)

    @field_validator("relay_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("relay_url must be a ws:// or wss:// URL")
        return v

    @field_validator("modes", mode="before")
    @classmethod
    def _split_modes(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [m.strip() for m in v.split(",") if m.strip()]
        return v

    @field_validator("modes")
    @classmethod
    def _check_modes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one audit mode is required")
        unknown = [m for m in v if m not in available_modes()]
        if unknown:
            raise ValueError(f"unknown audit modes: {unknown}")
        return list(dict.fromkeys(v))

    def extractor_options(self, mode: str) -> dict[str, Any]:
        """Constructor kwargs for a mode's extractor."""
        if mode == "transactions":
            return {"ledger_pubkey": self.ledger_pubkey, "asset": self.asset}
        return {"asset": self.asset}


def load_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AuditorConfig:
    """Build config from CLI overrides, then environment variables.

    ``overrides`` values of None are ignored so unset CLI flags fall
    through to defaults.
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {
        k: v for k, v in (overrides or {}).items() if v is not None
    }
    for field_name, env_key in ENV_KEYS.items():
        raw = env.get(env_key)
        if raw is not None and raw != "":
            values[field_name] = raw
    return AuditorConfig(**values)


__all__ = ["DEFAULT_RELAY_URL", "ENV_KEYS", "AuditorConfig", "load_config"]
