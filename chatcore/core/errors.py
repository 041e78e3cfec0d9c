# chatcore/core/errors.py
from __future__ import annotations

from typing import Optional


class ChatCoreError(Exception):
    """Base class for every condition raised by the orchestration core."""


class ConfigurationError(ChatCoreError):
    """Token budget or endpoint options are inconsistent. Raised at setup."""


class BrokenChain(ChatCoreError):
    def __init__(self, leaf_id: str, missing_id: Optional[str], reason: str = "missing_parent") -> None:
        self.leaf_id = leaf_id
        self.missing_id = missing_id
        self.reason = reason
        super().__init__(f"Broken message chain from {leaf_id}: {reason} ({missing_id})")


class ContextOverflow(ChatCoreError):
    def __init__(self, max_tokens: int, instructions_tokens: int, remaining_tokens: int, detail: str = "") -> None:
        self.max_tokens = int(max_tokens)
        self.instructions_tokens = int(instructions_tokens)
        self.remaining_tokens = int(remaining_tokens)
        msg = (
            "Cannot fit the instructions within the token limit. "
            f"Max allowed tokens: {self.max_tokens}, "
            f"Instructions token count: {self.instructions_tokens}, "
            f"Remaining tokens: {self.remaining_tokens}"
        )
        if detail:
            msg = f"{msg}. {detail}"
        super().__init__(msg)


class ProviderError(ChatCoreError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, partial_text: str = "") -> None:
        self.status_code = status_code
        self.partial_text = partial_text
        super().__init__(message)


class ProviderTransportError(ProviderError):
    """Network failure or timeout talking to the provider. Not retried here."""


class ProviderSoftError(ProviderError):
    """Known benign stream anomaly; the partial reply stands as the result."""


class ProviderHardError(ProviderError):
    """Any other provider failure."""


API_KEY_TEXT = "Incorrect API Key, please contact your Admin"
GENERIC_TEXT = (
    "We encountered an issue processing your request. "
    "Please try again, or feel free to start a new chat."
)
OVERFLOW_TEXT = (
    "Cannot fit the instructions within the token limit. If using the Send Full Document to Model "
    "Setting, please reduce the size of the file before uploading. If using standard file upload, "
    "please reduce the number of files you are using. Max allowed tokens: {max_tokens}, "
    "Instructions token count: {instructions_tokens}"
)


def is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError) and exc.status_code == 401:
        return True
    return "api key" in str(exc).lower()


def user_error_text(exc: BaseException) -> str:
    """Render a user-facing message. Only actionable conditions keep detail."""
    if is_auth_error(exc):
        return API_KEY_TEXT
    if isinstance(exc, ContextOverflow):
        return OVERFLOW_TEXT.format(max_tokens=exc.max_tokens, instructions_tokens=exc.instructions_tokens)
    return GENERIC_TEXT
