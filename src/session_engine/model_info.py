from __future__ import annotations

from dataclasses import dataclass, field

# Provider families whose reported total omits cache tokens.
CACHE_EXCLUSIVE_TOTAL_FAMILIES = frozenset({"anthropic", "bedrock", "vertex-anthropic"})


@dataclass(frozen=True)
class ModelLimit:
    context: int
    output: int
    input: int | None = None


@dataclass(frozen=True)
class ModelCost:
    """Per-million-token USD rates."""

    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0
    over_200k: ModelCost | None = None


@dataclass(frozen=True)
class ModelCapabilities:
    toolcall: bool = True
    attachment: bool = False
    structured_output: bool = True
    reasoning: bool = False


@dataclass(frozen=True)
class ModelInfo:
    id: str
    provider_id: str
    family: str
    limit: ModelLimit
    cost: ModelCost = field(default_factory=ModelCost)
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
