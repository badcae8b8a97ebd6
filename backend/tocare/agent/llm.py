import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from openai import AsyncOpenAI

from tocare.config import (
    OPENAI_API_KEY,
    OPENAI_MODEL,
    OPENAI_BASE_URL,
    OPENAI_TIMEOUT,
    LLM_MAX_RETRIES,
    LLM_RETRY_DELAY,
)
from tocare.errors import LLMError, LLMValidationError

logger = logging.getLogger(__name__)

TEXT_REMINDER = (
    "CRITICAL: You MUST include a text response. Never return tool calls alone "
    "without text content for the user to see."
)
JSON_REMINDER = (
    "CRITICAL: You MUST return valid JSON format. Ensure your response is properly formatted JSON."
)


@dataclass
class Validation:
    require_text: bool = False
    require_json: bool = False
    allow_tool_calls: bool = True


@dataclass
class RetryPolicy:
    max_attempts: int = LLM_MAX_RETRIES
    base_delay: float = LLM_RETRY_DELAY
    enable_fallback: bool = True


@dataclass
class LLMResult:
    text: str | None
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    used_fallback: bool = False
    retry_attempts: int = 0


def extract_tool_calls(message) -> List[Dict[str, Any]]:
    calls = []
    for tool_call in getattr(message, "tool_calls", None) or []:
        if getattr(tool_call, "type", "function") != "function":
            continue
        fn = tool_call.function
        try:
            params = json.loads(fn.arguments or "{}")
        except (TypeError, ValueError):
            logger.warning("[llm] dropping tool call %s with unparseable arguments: %r", fn.name, fn.arguments)
            continue
        calls.append({"name": fn.name, "parameters": params})
    return calls


def validation_error(text: str | None, tool_calls: list, validation: Validation) -> str | None:
    if validation.require_text and not text:
        if tool_calls:
            return "Text content required but only tool calls returned"
        return "Text content required but response was empty"
    if validation.require_json and text:
        try:
            json.loads(strip_code_fence(text))
        except ValueError:
            return "Valid JSON required but response is not valid JSON"
    if not validation.allow_tool_calls and tool_calls:
        return f"Tool calls not allowed but {len(tool_calls)} tool call(s) returned"
    return None


def with_reminder(params: Dict[str, Any], validation: Validation) -> Dict[str, Any]:
    if validation.require_text:
        reminder = TEXT_REMINDER
    elif validation.require_json:
        reminder = JSON_REMINDER
    else:
        return params
    messages = list(params.get("messages") or [])
    if not messages:
        return params
    enhanced = messages[:-1] + [{"role": "system", "content": reminder}, messages[-1]]
    return {**params, "messages": enhanced}


def strip_code_fence(text: str) -> str:
    t = (text or "").strip()
    m = re.match(r"^```(?:json)?\s*(.*?)\s*```$", t, re.DOTALL)
    return m.group(1) if m else t


def parse_json_text(text: str | None) -> Dict[str, Any]:
    data = json.loads(strip_code_fence(text or ""))
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


class LLMClient:
    def __init__(self, api_key: str | None = None, model: str | None = None, base_url: str | None = None,
                 timeout: float | None = None, client=None):
        self.api_key = api_key if api_key is not None else OPENAI_API_KEY
        self.model = model or OPENAI_MODEL
        self.base_url = base_url or OPENAI_BASE_URL
        self.timeout = timeout or OPENAI_TIMEOUT
        self._client = client
        self.enabled = bool(self.api_key) or client is not None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def call(self, params: Dict[str, Any], validation: Validation | None = None,
                   retry: RetryPolicy | None = None, label: str = "llm") -> LLMResult:
        if not self.enabled:
            raise LLMError(f"{label}: LLM client is not configured")
        validation = validation or Validation()
        retry = retry or RetryPolicy()
        params = {"model": self.model, **params}
        try:
            return await self._call_with_retry(params, validation, retry.max_attempts, retry.base_delay, label)
        except LLMError:
            if not (validation.require_text and retry.enable_fallback and params.get("tools")):
                raise
            logger.warning("[llm] %s: retries exhausted, trying once without tools", label)
            fallback_params = {k: v for k, v in params.items() if k not in ("tools", "tool_choice")}
            fallback_validation = Validation(require_text=True, require_json=False, allow_tool_calls=False)
            try:
                result = await self._call_with_retry(fallback_params, fallback_validation, 0, retry.base_delay,
                                                     f"{label} (fallback)")
            except LLMError as exc:
                raise LLMError(f"{label} failed even with fallback strategy") from exc
            result.used_fallback = True
            return result

    async def _call_with_retry(self, params: Dict[str, Any], validation: Validation, max_attempts: int,
                               base_delay: float, label: str) -> LLMResult:
        attempt = 0
        while True:
            logger.info("[llm] %s attempt %s/%s", label, attempt + 1, max_attempts + 1)
            try:
                completion = await self.client.chat.completions.create(**params)
            except Exception as exc:
                if attempt >= max_attempts:
                    raise LLMError(f"{label}: {exc}") from exc
                logger.warning("[llm] %s API error on attempt %s: %s", label, attempt + 1, exc)
                await asyncio.sleep(base_delay * (attempt + 1))
                attempt += 1
                continue

            choices = getattr(completion, "choices", None) or []
            message = choices[0].message if choices else None
            if message is None:
                reason = "OpenAI returned no message"
                text, tool_calls = None, []
            else:
                text = message.content or None
                tool_calls = extract_tool_calls(message)
                reason = validation_error(text, tool_calls, validation)

            if reason is None:
                return LLMResult(text=text, tool_calls=tool_calls, retry_attempts=attempt)
            if attempt >= max_attempts:
                raise LLMValidationError(f"{label}: validation failed: {reason}", reason=reason)
            logger.warning("[llm] %s %s, retrying with reminder", label, reason)
            params = with_reminder(params, validation)
            await asyncio.sleep(base_delay * (attempt + 1))
            attempt += 1

    async def chat(self, messages: list[dict], temperature: float = 0.3, max_tokens: int = 150,
                   model: str | None = None, label: str = "chat") -> str | None:
        """Plain text completion; returns None when disabled or on failure."""
        if not self.enabled:
            return None
        params = {"messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        if model:
            params["model"] = model
        try:
            result = await self.call(params, Validation(require_text=True, allow_tool_calls=False),
                                     RetryPolicy(enable_fallback=False), label=label)
        except LLMError as exc:
            logger.warning("[llm] %s failed: %s", label, exc)
            return None
        return (result.text or "").strip() or None
