from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatcore.core.settings import AppSettings, get_settings
from chatcore.orchestration.budget import Budget, build_budget
from chatcore.orchestration.messages import Attachment
from chatcore.utils.tokens import EncodingSpec, select_encoding

log = logging.getLogger("app.context")

VISION_MODEL_PATTERNS = (
    "gpt-4o",
    "gpt-4-turbo",
    "gpt-4-vision",
    "llava",
    "llama3.2-vision",
    "claude-3",
    "gemini-pro-vision",
    "gemini-1.5",
)

ENDPOINTS = ("openAI", "azureOpenAI", "openrouter", "ollama", "custom")


def is_vision_model(model: str) -> bool:
    mdl = (model or "").lower()
    return any(p in mdl for p in VISION_MODEL_PATTERNS)


class AzureOptions(BaseModel):
    instance_name: Optional[str] = None
    deployment_name: Optional[str] = None
    api_version: Optional[str] = None
    api_key: Optional[str] = None


class EndpointOptions(BaseModel):
    """What the route layer hands the core for one request."""

    model_config = ConfigDict(protected_namespaces=())

    endpoint: str = "openAI"
    model: Optional[str] = None
    model_options: Dict[str, Any] = Field(default_factory=dict)
    models: List[str] = Field(default_factory=list)  # models available on this endpoint

    prompt_prefix: Optional[str] = None
    model_label: Optional[str] = None
    user_name: Optional[str] = None

    api_key: Optional[str] = None
    base_url: Optional[str] = None  # reverse proxy / custom base URL
    headers: Dict[str, str] = Field(default_factory=dict)
    proxy: Optional[str] = None
    azure: Optional[AzureOptions] = None
    add_params: Dict[str, Any] = Field(default_factory=dict)
    drop_params: List[str] = Field(default_factory=list)

    force_prompt: Optional[bool] = None
    stream: bool = True
    context_strategy: Optional[str] = None
    max_context_tokens: Optional[int] = None
    max_prompt_tokens: Optional[int] = None
    model_context_tokens: Dict[str, int] = Field(default_factory=dict)

    resend_files: bool = False
    full_document: bool = False
    image_detail: str = "auto"

    detect_injection: bool = False
    pii_mode: Optional[str] = None  # block|Mask|Fake|Category|Random


class RequestContext:
    """Short-lived per-request view: resolved model, mode flags, budget and encoding."""

    def __init__(
        self,
        options: EndpointOptions,
        *,
        attachments: Iterable[Attachment] = (),
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.options = options
        s = self.settings

        self.model_options: Dict[str, Any] = dict(options.model_options)
        model = self.model_options.get("model") or options.model or s.default_model

        self.is_azure = options.endpoint == "azureOpenAI" or options.azure is not None
        if self.is_azure and s.azure_openai_default_model:
            model = s.azure_openai_default_model
        self.is_ollama = options.endpoint == "ollama"

        self.is_vision = False
        if any(a.is_image for a in attachments):
            model = self._vision_model(model)
            self.is_vision = is_vision_model(model)
        self.model = model
        self.model_options["model"] = model

        base = options.base_url or ""
        self.use_openrouter = (
            options.endpoint == "openrouter"
            or (options.endpoint == "openAI" and bool(s.openrouter_api_key) and not self.is_azure)
            or "openrouter.ai/api/v1" in base
        )

        if options.force_prompt is not None:
            self.force_prompt = options.force_prompt
        else:
            self.force_prompt = s.openai_force_prompt or ("completions" in base and "chat" not in base)

        mdl = model.lower()
        is_chat = self.use_openrouter or self.is_ollama or bool(base) or "gpt" in mdl
        if "text-davinci" in mdl or "gpt-3.5-turbo-instruct" in mdl or self.force_prompt:
            is_chat = False
        self.is_chat = is_chat
        self.is_unofficial = mdl.startswith("text-chat") or mdl.startswith("text-davinci-002-render")

        self.encoding: EncodingSpec = select_encoding(model, is_chat=self.is_chat, is_unofficial=self.is_unofficial)
        self.budget: Budget = build_budget(
            model,
            max_context_tokens=options.max_context_tokens,
            max_response_tokens=self.model_options.get("max_tokens"),
            max_prompt_tokens=options.max_prompt_tokens,
            strategy=options.context_strategy,
            model_overrides=options.model_context_tokens,
        )

        self.user_label = "User"
        self.assistant_label = options.model_label or "Assistant"
        self.prompt_prefix = options.prompt_prefix
        if self.is_unofficial and not self.is_chat:
            self.start_token, self.end_token = "<|im_start|>", "<|im_end|>"
        else:
            self.start_token, self.end_token = "||>", ""

    def _vision_model(self, model: str) -> str:
        if is_vision_model(model):
            return model
        fallback = self.settings.default_vision_model
        available = self.options.models
        if not available or fallback in available:
            chosen = fallback
        else:
            chosen = next((m for m in available if is_vision_model(m)), model)
        if chosen != model:
            log.info({"event": "context.vision_model", "from": model, "to": chosen})
        return chosen

    @property
    def strategy(self) -> str:
        return self.budget.strategy

    def describe(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "endpoint": self.options.endpoint,
            "is_chat": self.is_chat,
            "use_openrouter": self.use_openrouter,
            "is_azure": self.is_azure,
            "is_vision": self.is_vision,
            "encoding": self.encoding.key,
            "budget": self.budget.as_dict(),
            "strategy": self.strategy,
        }
