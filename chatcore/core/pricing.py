# chatcore/core/pricing.py
from __future__ import annotations

from typing import Dict

# USD per 1k tokens, keyed by model-name pattern (longest contained pattern wins)
PRICES: Dict[str, Dict[str, float]] = {
    "__default__": {"prompt": 0.0015, "completion": 0.002},
    "gpt-3.5": {"prompt": 0.0015, "completion": 0.002},
    "gpt-3.5-turbo-0125": {"prompt": 0.0005, "completion": 0.0015},
    "gpt-4": {"prompt": 0.03, "completion": 0.06},
    "gpt-4-32k": {"prompt": 0.06, "completion": 0.12},
    "gpt-4-1106": {"prompt": 0.01, "completion": 0.03},
    "gpt-4-turbo": {"prompt": 0.01, "completion": 0.03},
    "gpt-4o": {"prompt": 0.005, "completion": 0.015},
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
}


def _match(model: str) -> str:
    mdl = (model or "").lower()
    hits = [k for k in PRICES if k != "__default__" and k in mdl]
    return max(hits, key=len) if hits else "__default__"


def price_for(model: str, token_type: str, overrides: Dict[str, float] | None = None) -> float:
    mdl = (model or "").lower()
    kind = token_type.lower()
    if overrides:
        # exact model override wins
        key_exact = f"{mdl}:{kind}"
        if key_exact in overrides:
            return overrides[key_exact]
        key_def = f"__default__:{kind}"
        if key_def in overrides:
            return overrides[key_def]
    return PRICES[_match(mdl)].get(kind, 0.0)


def token_value(model: str, token_type: str, tokens: int, overrides: Dict[str, float] | None = None) -> float:
    return round((int(tokens) / 1000) * price_for(model, token_type, overrides), 6)
