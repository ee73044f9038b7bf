from __future__ import annotations

from dataclasses import dataclass

from session_engine.message import CanonicalTokens
from session_engine.model_info import ModelInfo


@dataclass(frozen=True)
class CompactionPolicy:
    auto: bool = True


def context_count(tokens: CanonicalTokens) -> int:
    # Reasoning tokens are generation cost, not context occupied.
    return tokens.input + tokens.output + tokens.cache.read + tokens.cache.write


def usable_capacity(model: ModelInfo) -> int:
    # NOTE: a declared input cap reserves no room for the next response, while
    # context - output does. Two models with the same real capacity can
    # therefore disagree on when to compact. Kept as-is pending a product call.
    if model.limit.input:
        return model.limit.input
    return model.limit.context - model.limit.output


def is_overflow(
    tokens: CanonicalTokens,
    model: ModelInfo,
    policy: CompactionPolicy | None = None,
) -> bool:
    policy = policy or CompactionPolicy()
    if not policy.auto:
        return False
    if model.limit.context <= 0:
        return False
    return context_count(tokens) > usable_capacity(model)
