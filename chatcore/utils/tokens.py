from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Union

import tiktoken

from chatcore.core import metrics
from chatcore.core.settings import get_settings

log = logging.getLogger("app.tokens")

MODERN_ENCODING = "o200k_base"
CHAT_ENCODING = "cl100k_base"
LEGACY_MODEL = "text-davinci-003"
KNOWN_ENCODINGS = {"o200k_base", "cl100k_base", "p50k_base", "p50k_edit", "r50k_base", "gpt2"}
IM_SPECIAL_TOKENS = {"<|im_start|>": 100264, "<|im_end|>": 100265}

TOKENS_PER_MESSAGE = 3
TOKENS_PER_NAME = 1
# Every reply is primed with <|start|>assistant<|message|>
REPLY_PRIMING_TOKENS = 3

IMAGE_LOW_COST = 85
IMAGE_HIGH_COST = 170
IMAGE_ADDITIONAL_COST = 85

ELISION_MARKER = "\n...[truncated]...\n"


class EncodingSpec(NamedTuple):
    key: str
    is_model_name: bool = False
    extra_special: Optional[Dict[str, int]] = None


Loader = Callable[[str, bool, Optional[Dict[str, int]]], Any]


def _tiktoken_loader(key: str, is_model_name: bool, extra_special: Optional[Dict[str, int]]) -> Any:
    enc = tiktoken.encoding_for_model(key) if is_model_name else tiktoken.get_encoding(key)
    if extra_special:
        enc = tiktoken.Encoding(
            name=f"{enc.name}_im",
            pat_str=enc._pat_str,
            mergeable_ranks=enc._mergeable_ranks,
            special_tokens={**enc._special_tokens, **extra_special},
        )
    return enc


def select_encoding(model: str, *, is_chat: bool, is_unofficial: bool = False) -> EncodingSpec:
    """Pick the encoding for a model.

    Chat models use o200k_base for the gpt-4o family and cl100k_base otherwise.
    Unofficial chat models get the legacy encoding with ChatML markers; other
    completion models resolve by model name ("instruct" models use the legacy one).
    """
    model = model or ""
    if is_chat:
        return EncodingSpec(MODERN_ENCODING if "gpt-4o" in model else CHAT_ENCODING)
    if is_unofficial:
        return EncodingSpec(LEGACY_MODEL, True, IM_SPECIAL_TOKENS)
    return EncodingSpec(LEGACY_MODEL if "instruct" in model else model, True)


def resolve_encoding(encoding: Union[str, EncodingSpec]) -> EncodingSpec:
    if isinstance(encoding, EncodingSpec):
        return encoding
    if encoding in KNOWN_ENCODINGS:
        return EncodingSpec(encoding)
    is_chat = "gpt" in encoding and "instruct" not in encoding
    return select_encoding(encoding, is_chat=is_chat)


class TokenizerPool:
    """Process-wide encoder cache, released wholesale every N token counts."""

    def __init__(self, loader: Optional[Loader] = None, reset_threshold: Optional[int] = None) -> None:
        self._loader = loader or _tiktoken_loader
        self._threshold = reset_threshold
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._calls = 0
        self.resets = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    @property
    def calls(self) -> int:
        return self._calls

    def get_tokenizer(self, spec: EncodingSpec) -> Any:
        enc = self._cache.get(spec.key)
        if enc is not None:
            return enc
        try:
            enc = self._loader(spec.key, spec.is_model_name, spec.extra_special)
        except KeyError:
            if not spec.is_model_name:
                raise
            log.debug({"event": "tokenizer.model_fallback", "model": spec.key, "fallback": LEGACY_MODEL})
            enc = self._loader(LEGACY_MODEL, True, spec.extra_special)
        with self._lock:
            # Racing writers may both load; the first stored encoder wins.
            return self._cache.setdefault(spec.key, enc)

    def _reset_locked(self) -> None:
        self._cache.clear()
        self._calls = 0
        self.resets += 1
        metrics.TOKENIZER_RESETS.inc()

    def free_and_reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def _tick(self) -> None:
        threshold = self._threshold or get_settings().tokenizer_reset_calls
        with self._lock:
            if self._calls >= threshold:
                log.debug({"event": "tokenizer.reset", "calls": self._calls})
                self._reset_locked()
            self._calls += 1

    def count(self, text: str, encoding: Union[str, EncodingSpec]) -> int:
        spec = resolve_encoding(encoding)
        self._tick()
        try:
            return len(self.get_tokenizer(spec).encode(text, allowed_special="all"))
        except Exception:
            log.warning({"event": "tokenizer.encode_failed", "encoding": spec.key}, exc_info=True)
            self.free_and_reset()
            return len(self.get_tokenizer(spec).encode(text, allowed_special="all"))

    def encode(self, text: str, encoding: Union[str, EncodingSpec]) -> List[int]:
        return list(self.get_tokenizer(resolve_encoding(encoding)).encode(text, allowed_special="all"))

    def decode(self, tokens: List[int], encoding: Union[str, EncodingSpec]) -> str:
        return self.get_tokenizer(resolve_encoding(encoding)).decode(tokens)


_pool = TokenizerPool()


def get_pool() -> TokenizerPool:
    return _pool


def get_tokenizer(encoding: Union[str, EncodingSpec]) -> Any:
    return get_pool().get_tokenizer(resolve_encoding(encoding))


def count_tokens(text: str, encoding: Union[str, EncodingSpec] = CHAT_ENCODING) -> int:
    return get_pool().count(text or "", encoding)


def _count_value(value: Any, encoding: Union[str, EncodingSpec]) -> int:
    if value is None:
        return 0
    if isinstance(value, list):
        total = 0
        for part in value:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if not kind or kind == "image_url":
                continue
            nested = part.get(kind)
            if nested:
                total += _count_value(nested, encoding)
        return total
    return count_tokens(str(value), encoding)


def count_message_tokens(unit: Dict[str, Any], encoding: Union[str, EncodingSpec] = CHAT_ENCODING) -> int:
    """Tokens for one role-tagged content unit, including per-message overhead."""
    n = TOKENS_PER_MESSAGE
    for key, value in unit.items():
        if key == "token_count":
            continue
        n += _count_value(value, encoding)
        if key == "name":
            n += TOKENS_PER_NAME
    return n


def image_token_cost(width: Optional[int], height: Optional[int], detail: Optional[str] = "auto") -> int:
    if detail == "low":
        return IMAGE_LOW_COST
    squares = math.ceil(int(width or 0) / 512) * math.ceil(int(height or 0) / 512)
    return squares * IMAGE_HIGH_COST + IMAGE_ADDITIONAL_COST


def token_split(text: str, chunk_size: int, encoding: Union[str, EncodingSpec] = CHAT_ENCODING) -> List[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    pool = get_pool()
    ids = pool.encode(text or "", encoding)
    return [pool.decode(ids[i:i + chunk_size], encoding) for i in range(0, len(ids), chunk_size)]


def truncate_to_tokens(text: str, max_tokens: int, encoding: Union[str, EncodingSpec] = CHAT_ENCODING) -> str:
    if max_tokens <= 0:
        return ""
    pool = get_pool()
    ids = pool.encode(text or "", encoding)
    if len(ids) <= max_tokens:
        return text
    return pool.decode(ids[:max_tokens], encoding)


def truncate_middle(text: str, max_tokens: int, encoding: Union[str, EncodingSpec] = CHAT_ENCODING) -> str:
    """Split into chunks of a third of the room; keep first and last around an elision marker.

    Returns "" when not even a one-token chunk fits.
    """
    chunk = (max_tokens - count_tokens(ELISION_MARKER, encoding)) // 3
    while chunk > 0:
        parts = token_split(text, chunk, encoding)
        if len(parts) < 2:
            candidate = parts[0] if parts else ""
        else:
            candidate = f"{parts[0]}{ELISION_MARKER}{parts[-1]}"
        if count_tokens(candidate, encoding) <= max_tokens:
            return candidate
        chunk -= max(1, chunk // 4)
    return ""
