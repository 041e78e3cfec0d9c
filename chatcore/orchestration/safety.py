from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from chatcore.core import metrics
from chatcore.core.settings import AppSettings, get_settings

log = logging.getLogger("app.safety")

INJECTION_WARNING = (
    "⚠️ System Message: Prompt Injection Detected. Please rewrite prompt or turn off "
    "Prompt Injection Detection in the conversation settings ⚠️"
)
PII_WARNING = (
    "⚠️ System Message: Personal Identifiable Information Detected. Please rewrite prompt or turn off "
    "the Block PII in the conversation settings ⚠️"
)
PII_REPLACE_MODES = ("Mask", "Fake", "Category", "Random")
DELIMITER = "__UNIQUE_DELIMITER__"


@dataclass
class SafetyVerdict:
    blocked: bool = False
    kind: Optional[str] = None  # injection|pii
    message: Optional[str] = None
    injection_probability: Optional[float] = None


class SafetyGate:
    """Best-effort content-safety checks in front of the completion driver.

    Every call degrades to "not blocked" when the safety service is missing
    or unreachable.
    """

    def __init__(self, settings: Optional[AppSettings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.settings.pg_base_url)

    def _client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": self.settings.request_timeout_sec}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return httpx.AsyncClient(**kwargs)

    def _url(self, path: str) -> str:
        return f"{str(self.settings.pg_base_url).rstrip('/')}{path}"

    async def injection_probability(self, prompt: str) -> Optional[float]:
        headers = {"x-api-key": self.settings.pg_token or ""}
        try:
            async with self._client() as client:
                resp = await client.post(self._url("/injection"), json={"prompt": prompt, "detect": True}, headers=headers)
                resp.raise_for_status()
                data = resp.json()
            return float(data["checks"][0]["probability"])
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            log.warning({"event": "safety.injection_failed", "error": str(exc)})
            return None

    async def pii_blocked(self, prompt: str) -> bool:
        s = self.settings
        body = {
            "model": s.pii_check_model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 1,
            "temperature": 1,
            "top_p": 1,
            "top_k": 50,
            "input": {"pii": "block"},
        }
        headers = {"Authorization": f"Bearer {s.pg_token or ''}"}
        try:
            async with self._client() as client:
                resp = await client.post(self._url("/chat/completions"), json=body, headers=headers)
        except httpx.HTTPError as exc:
            log.warning({"event": "safety.pii_failed", "error": str(exc)})
            return False
        if resp.status_code == 400:
            return True
        if resp.status_code >= 400:
            log.warning({"event": "safety.pii_status", "status": resp.status_code})
        return False

    async def check(self, prompt: str, *, detect_injection: bool, pii_mode: Optional[str]) -> SafetyVerdict:
        """Gate the latest user prompt. A blocked verdict carries the warning to return."""
        if not self.enabled or not prompt:
            return SafetyVerdict()
        verdict = SafetyVerdict()
        if detect_injection:
            verdict.injection_probability = await self.injection_probability(prompt)
            p = verdict.injection_probability
            if p is not None and p > self.settings.injection_threshold:
                metrics.SAFETY_BLOCKS.labels("injection").inc()
                log.info({"event": "safety.blocked", "kind": "injection", "probability": p})
                return SafetyVerdict(True, "injection", INJECTION_WARNING, p)
        if pii_mode and pii_mode.lower() == "block" and await self.pii_blocked(prompt):
            metrics.SAFETY_BLOCKS.labels("pii").inc()
            log.info({"event": "safety.blocked", "kind": "pii"})
            return SafetyVerdict(True, "pii", PII_WARNING, verdict.injection_probability)
        return verdict

    async def replace_pii(self, payload: List[Dict[str, Any]], mode: Optional[str]) -> List[Dict[str, Any]]:
        """Rewrite user message text through the PII replacement service."""
        if not self.enabled or mode not in PII_REPLACE_MODES:
            return payload
        targets = [i for i, unit in enumerate(payload) if unit.get("role") == "user" and isinstance(unit.get("content"), str)]
        if not targets:
            return payload
        body = {
            "prompt": DELIMITER.join(payload[i]["content"] for i in targets),
            "replace": True,
            "replace_method": mode.lower(),
        }
        headers = {"Authorization": f"Bearer {self.settings.pg_token or ''}"}
        try:
            async with self._client() as client:
                resp = await client.post(self._url("/PII"), json=body, headers=headers)
                resp.raise_for_status()
                new_prompt = resp.json()["checks"][0]["new_prompt"]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            log.warning({"event": "safety.pii_replace_failed", "error": str(exc)})
            return payload
        if not new_prompt:
            return payload
        out = [dict(unit) for unit in payload]
        for i, text in zip(targets, new_prompt.split(DELIMITER)):
            out[i]["content"] = text
        return out
