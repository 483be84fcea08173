from __future__ import annotations

import json
import logging
import os
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class CompletionUnavailable(Exception):
    pass


class CompletionClient(Protocol):
    def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str: ...


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        in_string = False
        escaped = False
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
                break
    return None


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _coerce_anthropic_text(response_json: dict[str, Any]) -> str:
    content = response_json.get("content")
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text_value = item.get("text")
        if isinstance(text_value, str) and text_value.strip():
            parts.append(text_value.strip())
    return "\n".join(parts).strip()


def provider_candidates() -> list[dict[str, Any]]:
    provider_preference = (os.getenv("HEARING_CHAT_PROVIDER") or "auto").strip().lower()
    candidates: list[dict[str, Any]] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            {
                "provider": "anthropic",
                "base_url": os.getenv("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1").rstrip("/"),
                "api_key": anthropic_api_key,
                "model": (os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/"),
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
                "api_key": openai_api_key,
                "model": (os.getenv("HEARING_CHAT_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {"claude": "anthropic", "anthropic": "anthropic", "openrouter": "openrouter", "openai": "openai"}
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
    others = [candidate for candidate in candidates if candidate["provider"] != canonical]
    return preferred + others


class HttpCompletionClient:
    def __init__(
        self,
        *,
        providers: list[dict[str, Any]] | None = None,
        timeout_seconds: float = 25.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._providers = providers
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def providers(self) -> list[dict[str, Any]]:
        return self._providers if self._providers is not None else provider_candidates()

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=8.0), transport=self._transport)

    def _openai_compatible(self, provider: dict[str, Any], prompt: str, temperature: float, max_tokens: int) -> str:
        payload = {
            "model": provider["model"],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers: dict[str, str] = {
            "Authorization": f"Bearer {provider['api_key']}",
            "Content-Type": "application/json",
        }
        if provider["provider"] == "openrouter":
            site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
            if site_url:
                headers["HTTP-Referer"] = site_url
            headers["X-Title"] = (os.getenv("OPENROUTER_APP_NAME") or "Health Profile Hearing").strip()
        with self._client() as client:
            response = client.post(f"{provider['base_url']}/chat/completions", headers=headers, json=payload)
        if response.status_code >= 400:
            raise CompletionUnavailable(_provider_error_message(response))
        return _coerce_completion_text(response.json()).strip()

    def _anthropic(self, provider: dict[str, Any], prompt: str, temperature: float, max_tokens: int) -> str:
        payload = {
            "model": provider["model"],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": str(provider["api_key"]),
            "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
            "Content-Type": "application/json",
        }
        with self._client() as client:
            response = client.post(f"{provider['base_url']}/messages", headers=headers, json=payload)
        if response.status_code >= 400:
            raise CompletionUnavailable(_provider_error_message(response))
        return _coerce_anthropic_text(response.json())

    def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        providers = self.providers
        if not providers:
            raise CompletionUnavailable("No completion provider key found in runtime env.")
        failures: list[str] = []
        for provider in providers:
            provider_name = str(provider.get("provider") or "unknown")
            try:
                if provider_name == "anthropic":
                    text = self._anthropic(provider, prompt, temperature, max_tokens)
                else:
                    text = self._openai_compatible(provider, prompt, temperature, max_tokens)
            except (CompletionUnavailable, httpx.HTTPError, ValueError) as exc:
                logger.warning("completion provider failed (%s): %s", provider_name, exc)
                failures.append(f"{provider_name}: {exc}")
                continue
            if text:
                logger.debug("completion provider used (%s)", provider_name)
                return text
            logger.warning("completion provider empty response (%s)", provider_name)
            failures.append(f"{provider_name}: empty response")
        raise CompletionUnavailable("; ".join(failures))
