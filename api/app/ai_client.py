import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

import httpx

from .config import Settings, get_settings
from .labels import format_labels_for_prompt, load_label_schema, validate_labels

logger = logging.getLogger("issuelens.ai")

BODY_PROMPT_LIMIT = 6000


def _default_base_url(provider: str) -> str:
    if provider == "openai":
        return "https://api.openai.com/v1"
    if provider == "anthropic":
        return "https://api.anthropic.com/v1"
    return ""


def _headers(provider: str, settings: Settings) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if provider == "anthropic":
        if settings.ai_api_key:
            headers["x-api-key"] = settings.ai_api_key
        headers["anthropic-version"] = "2023-06-01"
    else:
        if settings.ai_api_key:
            headers["Authorization"] = f"Bearer {settings.ai_api_key}"
    if settings.ai_headers_json:
        try:
            extra = json.loads(settings.ai_headers_json)
            if isinstance(extra, dict):
                headers.update({str(k): str(v) for k, v in extra.items()})
        except json.JSONDecodeError:
            logger.warning("AI_HEADERS_JSON is not valid JSON, ignoring it")
    return headers


_SENSITIVE_KEYS = frozenset(
    {"api_key", "apikey", "authorization", "access_token", "token", "secret", "password", "x-api-key"}
)
_SECRET_PATTERNS = (
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s\"']+"), r"\1***"),
    (re.compile(r"(?i)(x-api-key\s*[:=]\s*)[^\s\"']+"), r"\1***"),
    (re.compile(r"(?i)(api_key\s*[:=]\s*)[^\s\"']+"), r"\1***"),
    (re.compile(r"\bsk-[A-Za-z0-9\-]{8,}\b"), "sk-***"),
)


def _redact(payload: Any) -> Any:
    """Mask secret-looking values anywhere in a decoded JSON document."""
    if isinstance(payload, dict):
        redacted: Dict[str, Any] = {}
        for key, value in payload.items():
            if str(key).lower() not in _SENSITIVE_KEYS:
                redacted[key] = _redact(value)
            elif isinstance(value, str) and len(value) > 4:
                redacted[key] = f"{value[:2]}***{value[-2:]}"
            else:
                redacted[key] = None if value is None else "***"
        return redacted
    if isinstance(payload, list):
        return [_redact(item) for item in payload]
    if isinstance(payload, str):
        for pattern, replacement in _SECRET_PATTERNS:
            payload = pattern.sub(replacement, payload)
    return payload


def _sanitize_response_body(text: str, limit: int = 800) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        return ""
    try:
        sanitized = json.dumps(_redact(json.loads(trimmed)), ensure_ascii=True)
    except (json.JSONDecodeError, TypeError, ValueError):
        sanitized = _redact(trimmed)
    return sanitized[:limit] + "..." if len(sanitized) > limit else sanitized


def _raise_for_status_with_detail(response: httpx.Response, url: str) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = _sanitize_response_body(response.text)
        message = f"{exc} | url={url} | body={detail}" if detail else f"{exc} | url={url}"
        raise httpx.HTTPStatusError(message, request=exc.request, response=exc.response) from exc


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model reply, tolerating code fences and chatter."""
    if not text:
        return None
    candidate = text.strip()
    if candidate.startswith("```"):
        parts = candidate.split("```")
        if len(parts) >= 3:
            candidate = parts[1].strip()
            if candidate.lower().startswith("json"):
                candidate = candidate[4:].strip()
    snippets = [candidate]
    start, end = candidate.find("{"), candidate.rfind("}")
    if start != -1 and end > start:
        snippets.append(candidate[start : end + 1])
    for snippet in snippets:
        try:
            parsed = json.loads(snippet)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _build_prompts(title: str, body: str, labels_text: str) -> Dict[str, str]:
    system_prompt = (
        "You label GitHub issues and pull requests of a chat application.\n"
        "Return ONLY one valid JSON object with exactly these fields:\n"
        f"{labels_text}\n"
        "Rules:\n"
        "- Flag fields are true or false.\n"
        "- Value fields are a string, or false when the issue does not mention one.\n"
        "- Judge by what the issue is about, not by words that merely appear in logs.\n"
        '- If nothing applies, set "Need Manual Check" to true.\n'
    )
    body_text = (body or "").strip()
    if len(body_text) > BODY_PROMPT_LIMIT:
        body_text = body_text[:BODY_PROMPT_LIMIT] + "\n[truncated]"
    user_prompt = json.dumps({"title": title, "body": body_text}, ensure_ascii=False)
    return {"system": system_prompt, "user": user_prompt}


def _build_request(provider: str, base_url: str, settings: Settings, prompts: Dict[str, str]) -> Tuple[str, Dict[str, Any]]:
    common = {
        "model": settings.ai_model,
        "max_tokens": settings.ai_max_tokens,
        "temperature": settings.ai_temperature,
    }
    if provider == "anthropic":
        return f"{base_url.rstrip('/')}/messages", {
            **common,
            "system": prompts["system"],
            "messages": [{"role": "user", "content": prompts["user"]}],
        }
    return f"{base_url.rstrip('/')}/chat/completions", {
        **common,
        "messages": [
            {"role": "system", "content": prompts["system"]},
            {"role": "user", "content": prompts["user"]},
        ],
    }


def _reply_text(provider: str, data: Dict[str, Any]) -> str:
    if provider == "anthropic":
        return "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
    choices = data.get("choices") or []
    message = (choices[0].get("message") or {}) if choices else {}
    return message.get("content") or ""


class IssueClassifier:
    """Thin client for an OpenAI-compatible or Anthropic chat endpoint."""

    def __init__(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore) -> None:
        self._client = client
        self._semaphore = semaphore

    @property
    def provider(self) -> str:
        return get_settings().ai_provider.lower()

    @property
    def model(self) -> str:
        return get_settings().ai_model

    async def classify(self, title: str, body: str) -> Dict[str, Any]:
        settings = get_settings()
        raw_provider = settings.ai_provider.lower()
        if raw_provider in ("", "none"):
            raise ValueError("AI_PROVIDER is not configured")
        if not settings.ai_model:
            raise ValueError("AI_MODEL is required for classification")

        provider = "anthropic" if raw_provider == "anthropic" else "openai"
        base_url = settings.ai_base_url or _default_base_url(raw_provider)
        if not base_url:
            raise ValueError("AI_BASE_URL is required for this provider")

        schema = load_label_schema(settings.labels_path)
        prompts = _build_prompts(title, body, format_labels_for_prompt(schema))
        url, payload = _build_request(provider, base_url, settings, prompts)

        async with self._semaphore:
            response = await self._client.post(
                url,
                headers=_headers(provider, settings),
                json=payload,
                timeout=settings.ai_timeout,
            )
        _raise_for_status_with_detail(response, url)

        try:
            data = response.json()
        except ValueError as exc:
            detail = _sanitize_response_body(response.text)
            raise ValueError(
                f"AI response JSON decode failed (status {response.status_code}) | url={url} | body={detail}"
            ) from exc

        extracted = _extract_json(_reply_text(provider, data))
        if extracted is None:
            raise ValueError(f"AI response did not contain a JSON object | url={url}")
        logger.debug("Classified %r with %s/%s", title[:80], raw_provider, settings.ai_model)
        return validate_labels(extracted, schema)
