"""
Language-model client for Ollama's ``/api/generate`` endpoint.

Public API
----------
ModelConfig.from_settings()                          -> ModelConfig
OllamaLLMService.generate(prompt, system=..., ...)   -> GenerationResult
OllamaLLMService.stream(prompt, system=..., ...)     -> AsyncIterator[str]
OllamaLLMService.list_models()                       -> List[str]
parse_json_response(text)                            -> (ok, value)
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class LLMServiceError(RuntimeError):
    """Raised when the model call fails or returns an unusable response."""


@dataclass(frozen=True)
class ModelConfig:
    """Which model to call and how."""

    model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    base_url: str = "http://localhost:11434"
    timeout: float = 300.0

    @classmethod
    def from_settings(cls) -> "ModelConfig":
        return cls(
            model=settings.OLLAMA_LLM_MODEL,
            temperature=settings.LLM_TEMPERATURE,
            base_url=settings.OLLAMA_BASE_URL,
            timeout=float(settings.OLLAMA_TIMEOUT),
        )

    def with_overrides(self, model: Optional[str] = None,
                       temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None) -> "ModelConfig":
        changes: Dict[str, Any] = {}
        if model:
            changes["model"] = model
        if temperature is not None:
            changes["temperature"] = temperature
        if max_tokens is not None:
            changes["max_tokens"] = max_tokens
        return replace(self, **changes) if changes else self


@dataclass
class GenerationResult:
    text: str
    model: str
    tokens_used: Optional[int] = None


class OllamaLLMService:
    """Thin async client over Ollama text generation."""

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or ModelConfig.from_settings()
        self._transport = transport

    def _client(self, config: ModelConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout, connect=10.0),
            transport=self._transport,
        )

    def _payload(self, prompt: str, system: Optional[str], config: ModelConfig,
                 stream: bool) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": config.temperature}
        if config.max_tokens:
            options["num_predict"] = config.max_tokens
        payload: Dict[str, Any] = {
            "model": config.model,
            "prompt": prompt,
            "stream": stream,
            "options": options,
        }
        if system:
            payload["system"] = system
        return payload

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        config: Optional[ModelConfig] = None,
    ) -> GenerationResult:
        """
        Single non-streaming completion.

        Raises:
            LLMServiceError: timeout, connection failure, non-200 response
                             or a body without a ``response`` field.
        """
        cfg = config or self.config
        try:
            async with self._client(cfg) as client:
                resp = await client.post(
                    "/api/generate", json=self._payload(prompt, system, cfg, stream=False)
                )
        except httpx.TimeoutException as exc:
            raise LLMServiceError(f"Model request timed out after {cfg.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"Cannot reach model server: {exc}") from exc

        if resp.status_code != 200:
            logger.error("Ollama returned HTTP %d: %s", resp.status_code, resp.text[:300])
            raise LLMServiceError(f"Model server returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise LLMServiceError("Model server returned invalid JSON") from exc
        if "response" not in body:
            raise LLMServiceError(body.get("error") or "Model response missing 'response'")

        tokens = None
        if "eval_count" in body or "prompt_eval_count" in body:
            tokens = int(body.get("prompt_eval_count", 0)) + int(body.get("eval_count", 0))
        return GenerationResult(text=body["response"], model=body.get("model", cfg.model),
                                tokens_used=tokens)

    async def stream(
        self,
        prompt: str,
        system: Optional[str] = None,
        config: Optional[ModelConfig] = None,
    ) -> AsyncIterator[str]:
        """Yield response text fragments from Ollama's NDJSON stream."""
        cfg = config or self.config
        try:
            async with self._client(cfg) as client:
                async with client.stream(
                    "POST", "/api/generate",
                    json=self._payload(prompt, system, cfg, stream=True),
                ) as resp:
                    if resp.status_code != 200:
                        await resp.aread()
                        raise LLMServiceError(f"Model server returned HTTP {resp.status_code}")
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            event = json.loads(line)
                        except ValueError as exc:
                            raise LLMServiceError("Malformed stream event from model server") from exc
                        if event.get("error"):
                            raise LLMServiceError(event["error"])
                        if event.get("response"):
                            yield event["response"]
                        if event.get("done"):
                            break
        except httpx.TimeoutException as exc:
            raise LLMServiceError(f"Model request timed out after {cfg.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"Cannot reach model server: {exc}") from exc

    async def list_models(self) -> List[str]:
        """
        Names of the models installed on the Ollama server.

        Raises:
            LLMServiceError: the server is unreachable or answers non-200.
        """
        try:
            async with self._client(self.config) as client:
                resp = await client.get("/api/tags", timeout=10.0)
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"Cannot reach model server: {exc}") from exc
        if resp.status_code != 200:
            raise LLMServiceError(f"Model server returned HTTP {resp.status_code}")
        try:
            return [m.get("name", "") for m in resp.json().get("models", [])]
        except ValueError as exc:
            raise LLMServiceError("Model server returned invalid JSON") from exc


# ---------------------------------------------------------------------------
# Robust JSON parsing of model output
# ---------------------------------------------------------------------------

def parse_json_response(response: str) -> Tuple[bool, Any]:
    """
    Try multiple strategies to parse JSON from potentially messy model output.

    Handles markdown code fences, trailing commas, Python-style literals,
    surrounding prose and a missing closing bracket.  Returns
    ``(success, parsed_value)``.
    """
    if not response:
        return False, None

    text = response.strip()
    ok, val = _try_json(text)
    if ok:
        return True, val

    stripped = _strip_code_fences(text)
    if stripped != text:
        ok, val = _try_json(stripped)
        if ok:
            return True, val
        text = stripped

    fixed = _fix_json_issues(text)
    ok, val = _try_json(fixed)
    if ok:
        return True, val

    for open_b, close_b in (("[", "]"), ("{", "}")):
        fragment = _extract_json_structure(text, open_b, close_b)
        if fragment:
            for candidate in (fragment, _fix_json_issues(fragment)):
                ok, val = _try_json(candidate)
                if ok:
                    return True, val

    for suffix in ("]", "}", "}]"):
        ok, val = _try_json(fixed + suffix)
        if ok:
            return True, val

    logger.warning("parse_json_response: all strategies failed. Preview: %s", response[:400])
    return False, None


def _try_json(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def _strip_code_fences(text: str) -> str:
    text = re.sub(r"^```(?:json|javascript|text)?\s*\n?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def _fix_json_issues(text: str) -> str:
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\bNone\b", "null", text)
    return text.strip()


def _extract_json_structure(text: str, open_b: str, close_b: str) -> str:
    """First balanced ``open_b … close_b`` block in *text*, ignoring brackets inside strings."""
    start = text.find(open_b)
    if start == -1:
        return ""
    depth = 0
    in_string = escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif ch == "\\" and in_string:
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string and ch == open_b:
            depth += 1
        elif not in_string and ch == close_b:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return ""
