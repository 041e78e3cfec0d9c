from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

from chatcore.core.errors import ConfigurationError
from chatcore.orchestration.request_context import AzureOptions, RequestContext
from chatcore.providers.base import ShapedRequest

log = logging.getLogger("app.shaper")

_ENV_RX = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ProviderMode(str, Enum):
    DIRECT = "direct"
    REVERSE_PROXY = "reverse_proxy"
    OPENROUTER = "openrouter"
    AZURE = "azure"
    LOCAL = "local"


@dataclass
class Endpoint:
    mode: ProviderMode
    base_url: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def host(self) -> str:
        return urlparse(self.base_url).hostname or ""


def resolve_env_placeholders(value: str) -> str:
    """Replace ``${VAR}`` with the environment value (empty when unset)."""
    return _ENV_RX.sub(lambda m: os.environ.get(m.group(1), ""), value or "")


def _strip_route(url: str) -> str:
    url = url.rstrip("/")
    for route in ("/chat/completions", "/completions"):
        if url.endswith(route):
            return url[: -len(route)]
    return url


def _azure_deployment(ctx: RequestContext, az: AzureOptions) -> Optional[str]:
    if az.deployment_name:
        return az.deployment_name
    if ctx.settings.azure_use_model_as_deployment_name:
        # Azure deployment names cannot contain dots
        return ctx.model.replace(".", "")
    return ctx.settings.azure_openai_deployment_name


def resolve_endpoint(ctx: RequestContext) -> Endpoint:
    s = ctx.settings
    opts = ctx.options
    route = "/chat/completions" if ctx.is_chat else "/completions"
    headers = {k: resolve_env_placeholders(v) for k, v in opts.headers.items()}

    if ctx.is_azure:
        az = opts.azure or AzureOptions()
        instance = az.instance_name or s.azure_openai_instance_name
        deployment = _azure_deployment(ctx, az)
        key = az.api_key or opts.api_key or s.azure_openai_api_key
        if not instance or not deployment:
            raise ConfigurationError("Azure endpoint requires an instance name and a deployment name")
        base = f"https://{instance}.openai.azure.com/openai/deployments/{deployment}"
        version = az.api_version or s.azure_openai_api_version
        if key:
            headers["api-key"] = key
        return Endpoint(ProviderMode.AZURE, base, f"{base}{route}?api-version={version}", headers)

    if ctx.is_ollama:
        mode = ProviderMode.LOCAL
        base = _strip_route(opts.base_url or s.ollama_base_url)
        key = opts.api_key
    elif ctx.use_openrouter:
        mode = ProviderMode.OPENROUTER
        base = _strip_route(opts.base_url if opts.base_url and "openrouter.ai" in opts.base_url else s.openrouter_base_url)
        key = opts.api_key or s.openrouter_api_key
        headers.setdefault("HTTP-Referer", s.app_referer)
        headers.setdefault("X-Title", s.app_title)
    elif opts.base_url:
        mode = ProviderMode.REVERSE_PROXY
        base = _strip_route(opts.base_url)
        key = opts.api_key or s.openai_api_key
    else:
        mode = ProviderMode.DIRECT
        base = _strip_route(s.openai_base_url)
        key = opts.api_key or s.openai_api_key
        if s.openai_organization:
            headers.setdefault("OpenAI-Organization", s.openai_organization)

    if key:
        headers.setdefault("Authorization", f"Bearer {key}")
    return Endpoint(mode, base, f"{base}{route}", headers)


# ---------------- normalization rules ----------------

class NormalizationRule:
    """One provider quirk: a predicate plus a body transformation."""

    name = "rule"

    def applies(self, body: Dict[str, Any], ctx: RequestContext, endpoint: Endpoint) -> bool:
        raise NotImplementedError

    def apply(self, body: Dict[str, Any], ctx: RequestContext, endpoint: Endpoint) -> Dict[str, Any]:
        raise NotImplementedError


class AzureStripModel(NormalizationRule):
    name = "azure_strip_model"

    def applies(self, body, ctx, endpoint):
        return endpoint.mode is ProviderMode.AZURE and "model" in body

    def apply(self, body, ctx, endpoint):
        body.pop("model", None)
        return body


class LeadingSystemMessage(NormalizationRule):
    name = "leading_system"

    def applies(self, body, ctx, endpoint):
        if not isinstance(body.get("messages"), list):
            return False
        return endpoint.mode is ProviderMode.LOCAL or endpoint.host in ctx.settings.leading_system_hosts

    def apply(self, body, ctx, endpoint):
        messages = body["messages"]
        idx = next((i for i, m in enumerate(messages) if m.get("role") == "system"), -1)
        if idx > 0:
            system = messages.pop(idx)
            messages.insert(0, system)
        return body


class LoneSystemToUser(NormalizationRule):
    name = "lone_system"

    def applies(self, body, ctx, endpoint):
        messages = body.get("messages")
        return (
            isinstance(messages, list)
            and len(messages) == 1
            and messages[0].get("role") == "system"
            and endpoint.host in ctx.settings.lone_system_hosts
        )

    def apply(self, body, ctx, endpoint):
        body["messages"][0]["role"] = "user"
        return body


class AddParams(NormalizationRule):
    name = "add_params"

    def applies(self, body, ctx, endpoint):
        return bool(ctx.options.add_params)

    def apply(self, body, ctx, endpoint):
        body.update(copy.deepcopy(ctx.options.add_params))
        return body


class DropParams(NormalizationRule):
    name = "drop_params"

    def applies(self, body, ctx, endpoint):
        return bool(ctx.options.drop_params)

    def apply(self, body, ctx, endpoint):
        for param in ctx.options.drop_params:
            body.pop(param, None)
        return body


# Azure strip runs after the merge so caller params cannot put `model` back.
DEFAULT_RULES: Sequence[NormalizationRule] = (
    LeadingSystemMessage(),
    LoneSystemToUser(),
    AddParams(),
    AzureStripModel(),
    DropParams(),
)


def apply_rules(
    body: Dict[str, Any],
    ctx: RequestContext,
    endpoint: Endpoint,
    rules: Sequence[NormalizationRule] = DEFAULT_RULES,
) -> List[str]:
    applied: List[str] = []
    for rule in rules:
        if rule.applies(body, ctx, endpoint):
            rule.apply(body, ctx, endpoint)
            applied.append(rule.name)
    return applied


def _stream_delay(ctx: RequestContext, endpoint: Endpoint) -> float:
    if endpoint.mode is not ProviderMode.AZURE:
        return 0.0
    s = ctx.settings
    ms = s.azure_stream_delay_gpt4_ms if "gpt-4" in ctx.model else s.azure_stream_delay_ms
    return ms / 1000.0


def shape_request(
    ctx: RequestContext,
    payload: Union[List[Dict[str, Any]], str],
    *,
    overrides: Optional[Dict[str, Any]] = None,
    stream: Optional[bool] = None,
    rules: Sequence[NormalizationRule] = DEFAULT_RULES,
    endpoint: Optional[Endpoint] = None,
) -> ShapedRequest:
    """Build the provider request body, endpoint and headers for ``payload``."""
    s = ctx.settings
    endpoint = endpoint or resolve_endpoint(ctx)
    stream = ctx.options.stream if stream is None else stream

    body: Dict[str, Any] = dict(ctx.model_options)
    if overrides:
        body.update(overrides)
    if ctx.is_chat:
        body["messages"] = copy.deepcopy(payload) if isinstance(payload, list) else [{"role": "user", "content": payload}]
    else:
        body["prompt"] = payload if isinstance(payload, str) else "\n".join(str(u.get("content", "")) for u in payload)

    if ctx.is_vision:
        body.pop("stop", None)
        body["max_tokens"] = s.vision_max_tokens
    elif stream:
        body["max_tokens"] = body.get("max_tokens") or s.stream_max_tokens
    if stream:
        body["stream"] = True

    applied = apply_rules(body, ctx, endpoint, rules)
    log.debug({"event": "shaper.request", "mode": endpoint.mode.value, "url": endpoint.url, "rules": applied})
    return ShapedRequest(
        url=endpoint.url,
        body=body,
        headers=dict(endpoint.headers),
        stream=stream,
        is_chat=ctx.is_chat,
        mode=endpoint.mode.value,
        proxy=ctx.options.proxy,
        timeout=s.request_timeout_sec,
        stream_delay=_stream_delay(ctx, endpoint),
    )
