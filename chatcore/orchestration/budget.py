from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from chatcore.core.errors import ConfigurationError
from chatcore.core.settings import get_settings

# Context windows by model-name pattern; the longest contained pattern wins.
MODEL_CONTEXT_TOKENS: Dict[str, int] = {
    "gpt-4": 8187,
    "gpt-4-0613": 8187,
    "gpt-4-32k": 32758,
    "gpt-4-32k-0314": 32758,
    "gpt-4-32k-0613": 32758,
    "gpt-4-1106": 127990,
    "gpt-4-0125": 127990,
    "gpt-4-turbo": 127990,
    "gpt-4-vision": 127990,
    "gpt-4o": 127990,
    "gpt-4o-mini": 127990,
    "gpt-3.5-turbo": 16375,
    "gpt-3.5-turbo-0613": 4092,
    "gpt-3.5-turbo-0301": 4092,
    "gpt-3.5-turbo-16k": 16375,
    "gpt-3.5-turbo-16k-0613": 16375,
    "gpt-3.5-turbo-1106": 16375,
    "gpt-3.5-turbo-0125": 16375,
    "text-davinci-003": 4092,
    "mistral": 31990,
    "mixtral": 31990,
    "llama3": 8000,
    "llama2": 4000,
    "claude-3": 195000,
    "gemini": 30720,
}

CONTEXT_STRATEGIES = ("discard", "summarize")


def get_model_max_tokens(model: str, overrides: Optional[Dict[str, int]] = None) -> Optional[int]:
    """Context window for ``model``; endpoint-level ``overrides`` take precedence."""
    mdl = (model or "").lower()
    if not mdl:
        return None
    for table in (overrides or {}, MODEL_CONTEXT_TOKENS):
        if mdl in table:
            return int(table[mdl])
        hits = [k for k in table if k.lower() in mdl]
        if hits:
            return int(table[max(hits, key=len)])
    return None


@dataclass(frozen=True)
class Budget:
    max_context_tokens: int
    max_response_tokens: int
    max_prompt_tokens: int
    strategy: str = "discard"

    @property
    def summarizing(self) -> bool:
        return self.strategy == "summarize"

    def as_dict(self) -> Dict[str, int]:
        return {
            "max_context_tokens": self.max_context_tokens,
            "max_response_tokens": self.max_response_tokens,
            "max_prompt_tokens": self.max_prompt_tokens,
        }


def build_budget(
    model: str,
    *,
    max_context_tokens: Optional[int] = None,
    max_response_tokens: Optional[int] = None,
    max_prompt_tokens: Optional[int] = None,
    strategy: Optional[str] = None,
    model_overrides: Optional[Dict[str, int]] = None,
) -> Budget:
    """Resolve the token budget for one request.

    Summarize mode halves the context window up front to leave room for the
    summary. Raises ``ConfigurationError`` when prompt plus response cannot fit.
    """
    settings = get_settings()
    strategy = strategy or settings.context_strategy
    if strategy not in CONTEXT_STRATEGIES:
        raise ConfigurationError(f"Unknown context strategy: {strategy}")

    ctx = max_context_tokens or get_model_max_tokens(model, model_overrides) or settings.default_context_tokens
    if strategy == "summarize":
        ctx = ctx // 2
    resp = max_response_tokens or settings.default_response_tokens
    prompt = max_prompt_tokens if max_prompt_tokens is not None else ctx - resp

    if ctx <= 0 or resp <= 0 or prompt <= 0:
        raise ConfigurationError(
            f"Token budget must be positive (context={ctx}, response={resp}, prompt={prompt})"
        )
    if prompt + resp > ctx:
        raise ConfigurationError(
            f"maxPromptTokens + max_tokens ({prompt} + {resp} = {prompt + resp}) "
            f"must be less than or equal to maxContextTokens ({ctx})"
        )
    return Budget(ctx, resp, prompt, strategy)
