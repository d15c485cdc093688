"""Runtime settings, read from the environment (and ``.env``)."""

from __future__ import annotations

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    ca_name: str = "agentns-ca"
    ca_key_path: str = ""                 # PEM file; empty = fresh key per process
    cert_ttl_seconds: float = Field(default=30 * 24 * 3600, gt=0)
    binding_ttl_seconds: float = Field(default=3600, gt=0)
    scorer_timeout_seconds: float = Field(default=30.0, gt=0)
    verify_timeout_seconds: float = Field(default=5.0, gt=0)
    store_path: str = ""                  # JSON file; empty = in-memory
    scorer: Literal["rules", "llm"] = "rules"
    scorer_model: str = "claude-sonnet-4-6"
    log_level: str = "INFO"


_ENV_MAP = {
    "ca_name": "AGENTNS_CA_NAME",
    "ca_key_path": "AGENTNS_CA_KEY_PATH",
    "cert_ttl_seconds": "AGENTNS_CERT_TTL",
    "binding_ttl_seconds": "AGENTNS_BINDING_TTL",
    "scorer_timeout_seconds": "AGENTNS_SCORER_TIMEOUT",
    "verify_timeout_seconds": "AGENTNS_VERIFY_TIMEOUT",
    "store_path": "AGENTNS_STORE_PATH",
    "scorer": "AGENTNS_SCORER",
    "scorer_model": "AGENTNS_SCORER_MODEL",
    "log_level": "AGENTNS_LOG_LEVEL",
}


def load_settings(**overrides) -> Settings:
    """Build :class:`Settings` from ``AGENTNS_*`` variables plus overrides."""
    values = {
        field: os.environ[env]
        for field, env in _ENV_MAP.items()
        if os.environ.get(env, "") != ""
    }
    values.update(overrides)
    return Settings.model_validate(values)
