# sandbox_analyst/config.py
from __future__ import annotations

import os
from enum import Enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict

from dotenv import dotenv_values

from .errors import ConfigurationError


class AddressStrategy(str, Enum):
    """How the host reaches services running inside a sandbox container."""
    HOST      = "HOST"       # random host port mapped to the container port
    CONTAINER = "CONTAINER"  # Docker network DNS (sbx-<id>:<port>)


@dataclass(frozen=True)
class Config:
    # --- credentials ---
    openai_api_key: Optional[str] = None
    sandbox_api_key: Optional[str] = None
    exa_api_key: Optional[str] = None          # research bridge; optional

    # --- completion service ---
    openai_model: str = "gpt-4.1"
    research_model: str = "gpt-4.1"
    completion_max_retries: int = 2
    completion_timeout_s: int = 120

    # --- sandbox / docker bits ---
    sandbox_image: str = "analyst-sandbox:latest"
    sandbox_create_timeout_s: int = 30
    sandbox_exec_timeout_s: int = 120
    sandbox_address_strategy: AddressStrategy = AddressStrategy.HOST
    sandbox_host_gateway: str = "localhost"
    sandbox_network: Optional[str] = None
    sandbox_tmpfs_size_mb: int = 1024

    # --- research bridge (secondary sandbox) ---
    research_bridge_image: str = "exa-mcp-bridge:latest"
    research_bridge_public_url: Optional[str] = None

    # --- sessions ---
    session_ttl_s: int = 60 * 60
    session_sweep_interval_s: int = 10 * 60

    # --- loop policy ---
    artifact_quota: int = 3
    max_rounds: int = 10
    min_narrative_chars: int = 50
    output_preview_chars: int = 2000

    # --- in-container canonical paths (do not change lightly) ---
    dataset_path: str = "/session/data.csv"

    # ---------- helpers ----------

    @property
    def research_enabled(self) -> bool:
        return bool(self.exa_api_key)

    def missing_credentials(self) -> list[str]:
        """Names of the credentials the orchestration loop cannot run without."""
        missing = []
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.sandbox_api_key:
            missing.append("SANDBOX_API_KEY")
        return missing

    # ---------- construction ----------

    @staticmethod
    def _load_env_file(env_file_path: Optional[Path]) -> Dict[str, str]:
        """Load variables from a dotenv file, dropping empty keys."""
        if env_file_path is None or not Path(env_file_path).exists():
            return {}
        return {k: v for k, v in dotenv_values(env_file_path).items() if v is not None}

    @staticmethod
    def _get_env_value(name: str, default: Optional[str] = None, env_vars: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Get environment variable value, checking file first, then system env."""
        if env_vars and name in env_vars:
            value = env_vars[name]
        else:
            value = os.getenv(name, default)
        if value is not None and value.strip() == "":
            return default
        return value.strip() if value is not None else None

    @classmethod
    def _get_env_int(cls, name: str, default: int, env_vars: Optional[Dict[str, str]] = None) -> int:
        raw = cls._get_env_value(name, None, env_vars)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ConfigurationError(f"{name} must be an integer (got: {raw!r})")
        if value < 0:
            raise ConfigurationError(f"{name} must not be negative (got: {value})")
        return value

    @classmethod
    def _get_env_enum(cls, name: str, enum_cls, default, env_vars: Optional[Dict[str, str]] = None):
        raw = cls._get_env_value(name, None, env_vars)
        if raw is None:
            return default
        try:
            return enum_cls(raw.upper())
        except ValueError:
            allowed = ", ".join(e.value for e in enum_cls)
            raise ConfigurationError(f"{name} must be one of: {allowed} (got: {raw!r})")

    @classmethod
    def from_env(cls, env_file_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from environment variables, optionally from a file.

        Args:
            env_file_path: Optional path to a dotenv file. Variables from the file
                           take precedence over system environment variables.

        Environment variables:
          - OPENAI_API_KEY, SANDBOX_API_KEY, EXA_API_KEY
          - OPENAI_MODEL, RESEARCH_MODEL           (default: gpt-4.1)
          - COMPLETION_MAX_RETRIES                 (default: 2)
          - COMPLETION_TIMEOUT_S                   (default: 120)
          - SANDBOX_IMAGE                          (default: analyst-sandbox:latest)
          - SANDBOX_CREATE_TIMEOUT_S               (default: 30)
          - SANDBOX_EXEC_TIMEOUT_S                 (default: 120)
          - SANDBOX_ADDRESS_STRATEGY = HOST | CONTAINER
          - SANDBOX_HOST_GATEWAY                   (default: localhost)
          - SANDBOX_NETWORK                        (required for CONTAINER)
          - SANDBOX_TMPFS_SIZE_MB                  (default: 1024)
          - RESEARCH_BRIDGE_IMAGE, RESEARCH_BRIDGE_PUBLIC_URL
          - SESSION_TTL_S, SESSION_SWEEP_INTERVAL_S
          - ARTIFACT_QUOTA, MAX_ROUNDS, MIN_NARRATIVE_CHARS, OUTPUT_PREVIEW_CHARS
          - DATASET_PATH                           (default: /session/data.csv)
        """
        env_vars = cls._load_env_file(env_file_path)
        get = lambda name, default=None: cls._get_env_value(name, default, env_vars)
        get_int = lambda name, default: cls._get_env_int(name, default, env_vars)

        strategy = cls._get_env_enum(
            "SANDBOX_ADDRESS_STRATEGY", AddressStrategy, AddressStrategy.HOST, env_vars
        )
        network = get("SANDBOX_NETWORK")
        if strategy == AddressStrategy.CONTAINER and not network:
            raise ConfigurationError("SANDBOX_NETWORK is required when SANDBOX_ADDRESS_STRATEGY=CONTAINER")

        max_rounds = get_int("MAX_ROUNDS", 10)
        if max_rounds < 1:
            raise ConfigurationError("MAX_ROUNDS must be at least 1")

        return cls(
            openai_api_key=get("OPENAI_API_KEY"),
            sandbox_api_key=get("SANDBOX_API_KEY"),
            exa_api_key=get("EXA_API_KEY"),
            openai_model=get("OPENAI_MODEL", "gpt-4.1"),
            research_model=get("RESEARCH_MODEL", "gpt-4.1"),
            completion_max_retries=get_int("COMPLETION_MAX_RETRIES", 2),
            completion_timeout_s=get_int("COMPLETION_TIMEOUT_S", 120),
            sandbox_image=get("SANDBOX_IMAGE", "analyst-sandbox:latest"),
            sandbox_create_timeout_s=get_int("SANDBOX_CREATE_TIMEOUT_S", 30),
            sandbox_exec_timeout_s=get_int("SANDBOX_EXEC_TIMEOUT_S", 120),
            sandbox_address_strategy=strategy,
            sandbox_host_gateway=get("SANDBOX_HOST_GATEWAY", "localhost"),
            sandbox_network=network,
            sandbox_tmpfs_size_mb=get_int("SANDBOX_TMPFS_SIZE_MB", 1024),
            research_bridge_image=get("RESEARCH_BRIDGE_IMAGE", "exa-mcp-bridge:latest"),
            research_bridge_public_url=get("RESEARCH_BRIDGE_PUBLIC_URL"),
            session_ttl_s=get_int("SESSION_TTL_S", 60 * 60),
            session_sweep_interval_s=get_int("SESSION_SWEEP_INTERVAL_S", 10 * 60),
            artifact_quota=get_int("ARTIFACT_QUOTA", 3),
            max_rounds=max_rounds,
            min_narrative_chars=get_int("MIN_NARRATIVE_CHARS", 50),
            output_preview_chars=get_int("OUTPUT_PREVIEW_CHARS", 2000),
            dataset_path=get("DATASET_PATH", "/session/data.csv"),
        )
