# config.py
# Engine configuration.
#
# Thresholds are product-tuned constants kept as configuration. Values come
# from TASK_ENGINE_* environment variables (a .env file is honoured) and are
# validated by pydantic.

import json
import os
from typing import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from task_engine.errors import ConfigError
from task_engine.postprocess import FollowUpRule, default_follow_up_rules


class LLMSettings(BaseModel):
    """Model endpoint used for planning, observation and summarisation."""

    model: str = Field(default="anthropic/claude-3.5-haiku", description="OpenRouter model string.")
    base_url: str = Field(default="https://openrouter.ai/api/v1")
    api_key_env: str = Field(default="OPENROUTER_API_KEY", description="Env var holding the API key.")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)


class ServiceEndpoint(BaseModel):
    """HTTP location of one external tool service."""

    name: str
    base_url: str


class EngineConfig(BaseModel):
    """Loop limits, timeouts and post-processing rules for one engine."""

    max_iterations: int = Field(default=20, ge=1, description="Hard cap on loop iterations.")
    consecutive_failure_limit: int = Field(default=5, ge=1)
    stagnation_limit: int = Field(default=12, ge=1)
    repeated_action_limit: int = Field(default=15, ge=1)
    per_tool_max_retries: int = Field(default=2, ge=0)
    alternative_attempt_limit: int = Field(
        default=3, ge=1, description="Attempts after which an 'alternative' strategy aborts."
    )
    escalation_skip_threshold: int = Field(
        default=5, ge=1, description="Attempts after which unclassified errors are skipped."
    )

    llm_timeout_s: float = Field(default=60.0, gt=0)
    tool_timeout_s: float = Field(default=30.0, gt=0)
    planner_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    observer_temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    result_preview_chars: int = Field(default=2000, ge=100)
    message_length_limit: int = Field(default=280, ge=1)

    service_aliases: dict[str, str] = Field(default_factory=dict)
    follow_up_rules: list[FollowUpRule] = Field(default_factory=default_follow_up_rules)

    llm: LLMSettings = Field(default_factory=LLMSettings)
    services: list[ServiceEndpoint] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------

_PREFIX = "TASK_ENGINE_"

_SCALAR_FIELDS = (
    "max_iterations",
    "consecutive_failure_limit",
    "stagnation_limit",
    "repeated_action_limit",
    "per_tool_max_retries",
    "alternative_attempt_limit",
    "escalation_skip_threshold",
    "llm_timeout_s",
    "tool_timeout_s",
    "planner_temperature",
    "observer_temperature",
    "result_preview_chars",
    "message_length_limit",
)


def _json_env(env: Mapping[str, str], key: str) -> dict | None:
    raw = env.get(_PREFIX + key)
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{_PREFIX}{key} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ConfigError(f"{_PREFIX}{key} must be a JSON object.")
    return value


def load_config(env: Mapping[str, str] | None = None) -> EngineConfig:
    """
    Build an EngineConfig from the environment.

    TASK_ENGINE_SERVICES is a JSON object of service name -> base URL,
    TASK_ENGINE_SERVICE_ALIASES a JSON object of alias -> service name.
    Raises ConfigError on any invalid value.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    data: dict = {}
    for name in _SCALAR_FIELDS:
        value = env.get(_PREFIX + name.upper())
        if value is not None and value != "":
            data[name] = value

    llm: dict = {}
    if env.get(_PREFIX + "MODEL"):
        llm["model"] = env[_PREFIX + "MODEL"]
    if env.get(_PREFIX + "BASE_URL"):
        llm["base_url"] = env[_PREFIX + "BASE_URL"]
    if llm:
        data["llm"] = llm

    services = _json_env(env, "SERVICES")
    if services is not None:
        data["services"] = [{"name": k, "base_url": v} for k, v in services.items()]

    aliases = _json_env(env, "SERVICE_ALIASES")
    if aliases is not None:
        data["service_aliases"] = aliases

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid engine configuration: {exc}") from exc
