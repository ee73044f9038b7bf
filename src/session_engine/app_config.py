from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from session_engine.model_info import ModelCapabilities, ModelCost, ModelInfo, ModelLimit
from session_engine.rate_limit import RateLimitConfig

_PROVIDER_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float | None
    context_limit: int
    input_limit: int | None
    output_limit: int
    cost: ModelCost
    compaction_auto: bool
    compaction_protected_tail_messages: int
    max_tool_result_chars: int
    stream_timeout_seconds: float | None
    memory_db_path: str
    working_directory: str | None
    agent: str
    rate_limit: RateLimitConfig | None
    log_level: str
    log_consumers: list | None

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            id=self.model,
            provider_id=self.provider_name,
            family=self.provider_name,
            limit=ModelLimit(context=self.context_limit, output=self.output_limit, input=self.input_limit),
            cost=self.cost,
            capabilities=ModelCapabilities(
                toolcall=True,
                attachment=True,
                structured_output=True,
            ),
        )


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _parse_cost(raw: dict | None) -> ModelCost:
    raw = raw or {}
    over = raw.get("Over200K")
    return ModelCost(
        input=float(raw.get("Input", 0.0)),
        output=float(raw.get("Output", 0.0)),
        cache_read=float(raw.get("CacheRead", 0.0)),
        cache_write=float(raw.get("CacheWrite", 0.0)),
        over_200k=_parse_cost(over) if over else None,
    )


def _parse_rate_limit(raw: dict | None) -> RateLimitConfig | None:
    if not raw:
        return None
    period = str(raw.get("Period", "day")).strip().lower()
    if period not in ("day", "hour"):
        raise ValueError(f"RateLimit.Period must be 'day' or 'hour', got {period!r}")
    return RateLimitConfig(
        value=int(raw["Value"]),
        period=period,
        check_header=raw.get("CheckHeader"),
        fallback_value=_optional_int(raw.get("FallbackValue")),
    )


def parse_app_config(config: dict) -> AppConfig:
    temperature = config.get("Temperature")
    timeout = config.get("StreamTimeoutSeconds", 300)
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(temperature) if temperature is not None else None,
        context_limit=int(config.get("ContextLimit", 200_000)),
        input_limit=_optional_int(config.get("InputLimit")),
        output_limit=int(config.get("OutputLimit", 32_000)),
        cost=_parse_cost(config.get("Cost")),
        compaction_auto=_to_bool(config.get("CompactionAuto", True), default=True),
        compaction_protected_tail_messages=int(config.get("CompactionProtectedTailMessages", 2)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        stream_timeout_seconds=float(timeout) if timeout else None,
        memory_db_path=str(config.get("MemoryDbPath", ".session_engine/sessions.db")),
        working_directory=config.get("WorkingDirectory"),
        agent=str(config.get("Agent", "build")),
        rate_limit=_parse_rate_limit(config.get("RateLimit")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str, *, dotenv_path: str | None = None) -> RuntimeEnv:
    load_dotenv(dotenv_path)
    env_var = _PROVIDER_KEY_VARS.get(provider_name, "ANTHROPIC_API_KEY")
    return RuntimeEnv(
        provider_api_key=os.environ.get(env_var, ""),
        provider_env_var=env_var,
    )
