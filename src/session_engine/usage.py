from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from session_engine.message import CacheTokens, CanonicalTokens
from session_engine.model_info import CACHE_EXCLUSIVE_TOTAL_FAMILIES, ModelCost, ModelInfo

_PER_MILLION = Decimal(1_000_000)
_OVER_200K_THRESHOLD = 200_000


@dataclass(frozen=True)
class RawUsage:
    """Usage numbers as a provider adapter reports them, before normalization."""

    input_tokens: int | float | None = None
    output_tokens: int | float | None = None
    total_tokens: int | float | None = None
    reasoning_tokens: int | float | None = None
    cached_input_tokens: int | float | None = None


@dataclass(frozen=True)
class UsageResult:
    tokens: CanonicalTokens
    cost: float


def _safe(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def _lookup(metadata: dict[str, Any] | None, *path: str) -> Any:
    node: Any = metadata
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def normalize_usage(
    raw: RawUsage,
    metadata: dict[str, Any] | None,
    family: str,
) -> CanonicalTokens:
    input_tokens = _safe(raw.input_tokens)
    output_tokens = _safe(raw.output_tokens)
    reasoning_tokens = _safe(raw.reasoning_tokens)
    cache_read = _safe(raw.cached_input_tokens)

    cache_write_raw = _lookup(metadata, "anthropic", "cacheCreationInputTokens")
    if cache_write_raw is None:
        cache_write_raw = _lookup(metadata, "bedrock", "usage", "cacheWriteInputTokens")
    if cache_write_raw is None:
        cache_write_raw = _lookup(metadata, "venice", "usage", "cacheCreationInputTokens")
    cache_write = _safe(cache_write_raw)

    # Anthropic-style accounting already reports input exclusive of cache.
    excludes_cached = bool(metadata) and (
        _lookup(metadata, "anthropic") is not None or _lookup(metadata, "bedrock") is not None
    )
    if excludes_cached:
        adjusted_input = input_tokens
    else:
        adjusted_input = max(0, input_tokens - cache_read - cache_write)

    if family in CACHE_EXCLUSIVE_TOTAL_FAMILIES or raw.total_tokens is None:
        reported_total = adjusted_input + output_tokens + cache_read + cache_write
    else:
        reported_total = _safe(raw.total_tokens)

    return CanonicalTokens(
        input=adjusted_input,
        output=output_tokens,
        reasoning=reasoning_tokens,
        cache=CacheTokens(read=cache_read, write=cache_write),
        reported_total=reported_total,
    )


def _rates(tokens: CanonicalTokens, cost: ModelCost | None) -> ModelCost:
    if cost is None:
        return ModelCost()
    if cost.over_200k is not None and tokens.input + tokens.cache.read > _OVER_200K_THRESHOLD:
        return cost.over_200k
    return cost


def compute_cost(tokens: CanonicalTokens, cost: ModelCost | None) -> float:
    rates = _rates(tokens, cost)
    total = (
        Decimal(tokens.input) * Decimal(str(rates.input or 0)) / _PER_MILLION
        + Decimal(tokens.output) * Decimal(str(rates.output or 0)) / _PER_MILLION
        + Decimal(tokens.cache.read) * Decimal(str(rates.cache_read or 0)) / _PER_MILLION
        + Decimal(tokens.cache.write) * Decimal(str(rates.cache_write or 0)) / _PER_MILLION
    )
    result = float(total)
    if not math.isfinite(result):
        return 0.0
    return result


def get_usage(
    model: ModelInfo,
    raw: RawUsage,
    metadata: dict[str, Any] | None = None,
) -> UsageResult:
    tokens = normalize_usage(raw, metadata, model.family)
    return UsageResult(tokens=tokens, cost=compute_cost(tokens, model.cost))
