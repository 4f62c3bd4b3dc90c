"""
Relay configuration.

Values are read from the process environment once at startup and passed
explicitly to every component that needs them.
"""

from typing import Dict, Optional
import os

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


DEFAULT_UPSTREAM_URL = "https://api.us-west-2.modal.direct/v1/chat/completions"


class RelaySettings(BaseModel):
    """Runtime settings for the memory relay"""
    port: int = Field(default=10000, description="Listening port")
    upstream_api_key: Optional[str] = Field(None, description="Bearer credential for the upstream service")
    upstream_url: str = Field(default=DEFAULT_UPSTREAM_URL, description="Upstream chat-completions endpoint")
    master_prompt: Optional[str] = Field(None, description="Global instruction injected ahead of every prompt")
    sessions_dir: str = Field(default="sessions", description="Directory holding one JSON record per conversation")

    history_window: int = Field(default=100, ge=1, description="Newest client messages forwarded verbatim")
    fact_interval: int = Field(default=20, ge=1, description="Turns between fact-extraction passes")
    compression_threshold_tokens: int = Field(default=24000, ge=1)
    compression_keep_ratio: float = Field(default=0.35, gt=0.0, lt=1.0)
    compression_cooldown: int = Field(default=10, ge=0, description="Requests to wait after a declined compression offer")

    idle_timeout_seconds: float = Field(default=90.0, gt=0)
    watchdog_interval_seconds: float = Field(default=10.0, gt=0)
    request_timeout_seconds: float = Field(default=180.0, gt=0)
    max_upstream_attempts: int = Field(default=2, ge=1, le=2)
    max_tokens: Optional[int] = Field(default=8192, description="Applied when the client sends no max_tokens")
    keepalive_enabled: bool = True

    distill_model: Optional[str] = Field(None, description="Model for distillation calls; defaults to the request's model")
    distill_max_tokens: int = 1024
    distill_temperature: float = 0.3

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        env_file: Optional[str] = None
    ) -> "RelaySettings":
        """Build settings from environment variables, skipping unset ones.

        When reading the process environment, a `.env` file (`env_file`, or
        the nearest one above the working directory) is loaded first;
        variables already set in the process take precedence.
        """

        if environ is None:
            load_dotenv(env_file or find_dotenv(usecwd=True))
            env = os.environ
        else:
            env = environ

        mapping = {
            "PORT": "port",
            "GLM_API_KEY": "upstream_api_key",
            "UPSTREAM_URL": "upstream_url",
            "MASTER_PROMPT": "master_prompt",
            "SESSIONS_DIR": "sessions_dir",
            "HISTORY_WINDOW": "history_window",
            "FACT_INTERVAL": "fact_interval",
            "COMPRESSION_THRESHOLD_TOKENS": "compression_threshold_tokens",
            "COMPRESSION_KEEP_RATIO": "compression_keep_ratio",
            "COMPRESSION_COOLDOWN": "compression_cooldown",
            "IDLE_TIMEOUT_SECONDS": "idle_timeout_seconds",
            "WATCHDOG_INTERVAL_SECONDS": "watchdog_interval_seconds",
            "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
            "MAX_TOKENS": "max_tokens",
            "KEEPALIVE_ENABLED": "keepalive_enabled",
            "DISTILL_MODEL": "distill_model",
            "LOG_LEVEL": "log_level",
            "LOG_FORMAT": "log_format",
        }

        values = {}
        for env_name, field_name in mapping.items():
            raw = env.get(env_name)
            if raw is None or raw == "":
                continue
            values[field_name] = raw

        # Pydantic coerces the string values to the declared field types
        return cls.model_validate(values)
