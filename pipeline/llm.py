"""LLM client: multimodal vision calls to Google, Anthropic and OpenAI.

The continuity engine sends interleaved text and images to a vision-capable
model and gets raw text back. Credentials arrive per call (the engine never
owns a key), so provider clients are built from the `ModelCredentials` handed
in.

Every successful call is recorded in a usage log with an estimated cost; see
reset_usage(), get_usage_log() and get_usage_summary().

Error handling:
  - Rate limits (429), 5xx and connection/timeout errors are retried with
    exponential backoff.
  - Everything else (bad request, auth, unknown model, oversized image) raises
    LLMError with a short readable message and is never retried.
"""

from __future__ import annotations

import functools
import json
import logging
import threading
import time as _time
from typing import Any, Protocol, Sequence, TypeVar, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from pipeline.images import ImagePayload, base64_encoded_size

logger = logging.getLogger(__name__)

VisionPart = Union[str, ImagePayload]


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class ModelCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey")
    provider: str = config.DEFAULT_PROVIDER
    model: str = ""


def coerce_credentials(value: ModelCredentials | dict | str | None) -> ModelCredentials | None:
    """Normalize caller credentials; blank keys count as missing.

    A bare string is an API key for the default provider. Dicts may use
    `api_key` or `apiKey`; a dict that does not validate counts as missing.
    """
    if value is None:
        return None
    if isinstance(value, ModelCredentials):
        creds = value
    elif isinstance(value, dict):
        try:
            creds = ModelCredentials.model_validate(value)
        except ValidationError as exc:
            logger.warning("Ignoring malformed credentials (%d validation errors)", exc.error_count())
            return None
    else:
        creds = ModelCredentials(api_key=str(value))
    key = creds.api_key.strip()
    if not key:
        return None
    return creds.model_copy(update={"api_key": key, "provider": creds.provider.strip().lower()})


# ---------------------------------------------------------------------------
# Usage and cost log
# ---------------------------------------------------------------------------

# USD per 1M tokens (input, output), matched by longest model-name prefix.
# Image tokens are billed as input tokens by all three providers.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.5-pro":   (1.25, 10.00),
    "gemini-2.5-flash": (0.30,  2.50),
    "gemini-2.0-flash": (0.10,  0.40),
    "claude-opus-4":    (15.00, 75.00),
    "claude-sonnet-4":  (3.00, 15.00),
    "claude-haiku-4":   (1.00,  5.00),
    "gpt-4.1-mini":     (0.40,  1.60),
    "gpt-4.1-nano":     (0.10,  0.40),
    "gpt-4.1":          (2.00,  8.00),
    "gpt-4o-mini":      (0.15,  0.60),
    "gpt-4o":           (2.50, 10.00),
}

# Used for models missing from the table; errs on the expensive side.
_FALLBACK_PRICING = (2.50, 10.00)

_usage_lock = threading.Lock()
_usage_log: list[dict[str, Any]] = []


def get_model_pricing(model: str) -> tuple[float, float]:
    """($/1M input, $/1M output) for a model name."""
    matches = [prefix for prefix in MODEL_PRICING if model.startswith(prefix)]
    if not matches:
        logger.warning("No pricing for model '%s'; estimating with fallback rates", model)
        return _FALLBACK_PRICING
    return MODEL_PRICING[max(matches, key=len)]


def _record_usage(provider: str, model: str, input_tokens: int, output_tokens: int, images: int = 0):
    in_rate, out_rate = get_model_pricing(model)
    cost = (input_tokens * in_rate + output_tokens * out_rate) / 1_000_000
    with _usage_lock:
        _usage_log.append({
            "provider": provider,
            "model": model,
            "images": images,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost": cost,
            "timestamp": _time.time(),
        })
    logger.info(
        "Vision usage %s/%s: images=%d in=%d out=%d cost=$%.4f",
        provider, model, images, input_tokens, output_tokens, cost,
    )


def reset_usage():
    with _usage_lock:
        _usage_log.clear()


def get_usage_log() -> list[dict[str, Any]]:
    with _usage_lock:
        return list(_usage_log)


def get_usage_summary() -> dict[str, Any]:
    """Token, image and cost totals over the usage log."""
    entries = get_usage_log()
    input_tokens = sum(e["input_tokens"] for e in entries)
    output_tokens = sum(e["output_tokens"] for e in entries)
    return {
        "calls": len(entries),
        "images": sum(e["images"] for e in entries),
        "total_input_tokens": input_tokens,
        "total_output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "total_cost": round(sum(e["cost"] for e in entries), 4),
    }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(Exception):
    """Non-retryable failure of a vision call, with a readable message."""

    def __init__(self, message: str, provider: str = "", model: str = "", cause: Exception | None = None):
        self.provider = provider
        self.model = model
        self.cause = cause
        super().__init__(message)


class JSONExtractionError(ValueError):
    """Model text held no single, well-formed top-level JSON object."""


@functools.lru_cache(maxsize=1)
def _transient_error_types() -> tuple[type[BaseException], ...]:
    """Exception classes that signal a transient provider failure."""
    import anthropic
    import openai

    return (
        openai.RateLimitError,
        openai.InternalServerError,
        openai.APIConnectionError,
        anthropic.RateLimitError,
        anthropic.InternalServerError,
        anthropic.APIConnectionError,
        httpx.TransportError,
        ConnectionError,
        TimeoutError,
    )


def _status_code(exc: BaseException) -> int | None:
    # openai/anthropic expose `status_code`; google-genai exposes `code`.
    code = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def _is_retryable(exc: BaseException) -> bool:
    """True for rate limits, server errors and dropped connections."""
    if isinstance(exc, LLMError):
        return False
    if isinstance(exc, _transient_error_types()):
        return True
    from google.genai import errors as genai_errors

    if isinstance(exc, genai_errors.APIError):
        code = _status_code(exc)
        return code == 429 or (code is not None and code >= 500)
    return False


def _error_detail(exc: Exception) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
    message = getattr(exc, "message", None)
    return str(message or exc)


def _extract_error_message(exc: Exception, provider: str, model: str) -> str:
    """Short, readable message for a failed vision call."""
    if isinstance(exc, ValidationError):
        return f"[{provider}/{model}] Response did not match the expected schema ({exc.error_count()} errors)."

    detail = _error_detail(exc)
    if len(detail) > 300:
        detail = detail[:300] + "..."
    code = _status_code(exc)
    if code in (401, 403):
        return f"[{provider}] Authentication failed; check the {provider} API key for '{model}'."
    if code == 404:
        return f"[{provider}] Model '{model}' not found. Check the DOP_*_MODEL settings."
    if code == 413:
        return f"[{provider}/{model}] Request too large (images?): {detail}"
    if code == 429:
        return f"[{provider}/{model}] Quota exhausted or rate limited: {detail}"
    if code is not None and code < 500:
        return f"[{provider}/{model}] Bad request ({code}): {detail}"
    return f"[{provider}/{model}] {detail}"



# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def extract_json_object(text: Any) -> dict[str, Any]:
    """Return the first top-level JSON object embedded in model text.

    Scans from the first '{' tracking brace depth (braces inside JSON strings
    are ignored) and parses exactly that span. Prose before or after the
    object is tolerated; a missing, truncated or non-object span raises
    JSONExtractionError instead of guessing.
    """
    raw = str(text or "")
    start = raw.find("{")
    if start < 0:
        raise JSONExtractionError("No JSON object found in model response")

    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(raw)):
        ch = raw[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                snippet = raw[start: idx + 1]
                try:
                    parsed = json.loads(snippet)
                except json.JSONDecodeError as exc:
                    raise JSONExtractionError(f"Invalid JSON object: {exc}") from exc
                if not isinstance(parsed, dict):
                    raise JSONExtractionError("Top-level JSON value must be an object")
                return parsed

    raise JSONExtractionError("Truncated JSON: missing closing brace")


T = TypeVar("T", bound=BaseModel)


def parse_model_json(text: Any, response_model: type[T]) -> T:
    """Extract the JSON object from model text and validate it against a schema."""
    return response_model.model_validate(extract_json_object(text))


# ---------------------------------------------------------------------------
# Provider-specific call implementations
#
# Async clients are built per call: their connection pools are bound to the
# running event loop, and keys arrive per call.
# ---------------------------------------------------------------------------

# Anthropic rejects images whose base64 payload exceeds 5MB.
_ANTHROPIC_IMAGE_MAX_BASE64_BYTES = 5 * 1024 * 1024

# Models that require max_completion_tokens instead of the legacy max_tokens.
_OPENAI_NEW_TOKEN_PARAM_PREFIXES = (
    "gpt-4o", "gpt-4.1", "gpt-4.5", "gpt-5", "o1", "o3", "o4",
)

# Gemini models that require non-zero thinking budget.
_GOOGLE_THINKING_REQUIRED_PREFIXES = (
    "gemini-2.5-pro",
    "gemini-3.0-pro",
)
_GOOGLE_DEFAULT_THINKING_BUDGET = 1024


def _count_images(parts: Sequence[VisionPart]) -> int:
    return sum(1 for p in parts if isinstance(p, ImagePayload))


def _google_requires_thinking(model: str) -> bool:
    m = (model or "").lower().strip()
    return any(m.startswith(prefix) for prefix in _GOOGLE_THINKING_REQUIRED_PREFIXES)


async def _call_google(
    system_prompt: str,
    parts: Sequence[VisionPart],
    model: str,
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> str:
    from google import genai
    from google.genai import types

    client = genai.Client(api_key=api_key)

    contents = []
    for part in parts:
        if isinstance(part, ImagePayload):
            contents.append(types.Part.from_bytes(data=part.data, mime_type=part.mime_type))
        else:
            contents.append(types.Part.from_text(text=part))

    cfg = types.GenerateContentConfig(
        system_instruction=system_prompt or None,
        temperature=temperature,
        max_output_tokens=max_tokens,
        response_mime_type="application/json",
    )
    if _google_requires_thinking(model):
        cfg.thinking_config = types.ThinkingConfig(
            thinking_budget=min(_GOOGLE_DEFAULT_THINKING_BUDGET, max(1, max_tokens - 1))
        )
    else:
        # Keep non-thinking models deterministic in JSON mode.
        cfg.thinking_config = types.ThinkingConfig(thinking_budget=0)

    response = await client.aio.models.generate_content(model=model, contents=contents, config=cfg)

    content = str(getattr(response, "text", "") or "").strip()
    if not content:
        text_parts: list[str] = []
        for candidate in response.candidates or []:
            candidate_content = candidate.content if candidate is not None else None
            for part in (candidate_content.parts if candidate_content is not None else None) or []:
                part_text = str(getattr(part, "text", "") or "").strip()
                if part_text:
                    text_parts.append(part_text)
        content = "\n".join(text_parts).strip()

    meta = getattr(response, "usage_metadata", None)
    if meta:
        in_tok = getattr(meta, "prompt_token_count", 0) or 0
        out_tok = getattr(meta, "candidates_token_count", 0) or 0
        _record_usage("google", model, in_tok, out_tok, images=_count_images(parts))
    logger.info("Google [%s]: %d chars", model, len(content))
    return content


async def _call_anthropic(
    system_prompt: str,
    parts: Sequence[VisionPart],
    model: str,
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> str:
    import anthropic

    blocks: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, ImagePayload):
            if base64_encoded_size(len(part.data)) > _ANTHROPIC_IMAGE_MAX_BASE64_BYTES:
                raise LLMError(
                    f"[anthropic/{model}] Image exceeds the 5MB base64 limit ({len(part.data)} raw bytes)",
                    provider="anthropic",
                    model=model,
                )
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": part.mime_type,
                    "data": part.base64_data,
                },
            })
        else:
            blocks.append({"type": "text", "text": part})

    effective_system = (
        system_prompt
        + "\n\nIMPORTANT: Respond ONLY with a valid JSON object. No markdown fences, no explanation, no preamble."
    )

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=effective_system,
        messages=[{"role": "user", "content": blocks}],
    )

    text_parts: list[str] = []
    for block in response.content or []:
        if getattr(block, "type", "") == "text":
            text_parts.append(str(getattr(block, "text", "") or ""))
    content = "\n".join(text_parts).strip()

    in_tok = response.usage.input_tokens or 0
    out_tok = response.usage.output_tokens or 0
    _record_usage("anthropic", model, in_tok, out_tok, images=_count_images(parts))
    logger.info("Anthropic [%s]: %d chars, in=%d out=%d", model, len(content), in_tok, out_tok)
    return content


async def _call_openai(
    system_prompt: str,
    parts: Sequence[VisionPart],
    model: str,
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> str:
    from openai import AsyncOpenAI

    user_content: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, ImagePayload):
            user_content.append({"type": "image_url", "image_url": {"url": part.data_url()}})
        else:
            user_content.append({"type": "text", "text": part})

    kwargs: dict = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ],
        "temperature": temperature,
        "response_format": {"type": "json_object"},
    }
    if any(model.startswith(p) for p in _OPENAI_NEW_TOKEN_PARAM_PREFIXES):
        kwargs["max_completion_tokens"] = max_tokens
    else:
        kwargs["max_tokens"] = max_tokens

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(**kwargs)
    content = str(response.choices[0].message.content or "").strip() if response.choices else ""

    usage = getattr(response, "usage", None)
    if usage:
        _record_usage(
            "openai", model, usage.prompt_tokens or 0, usage.completion_tokens or 0,
            images=_count_images(parts),
        )
    logger.info("OpenAI [%s]: %d chars, usage=%s", model, len(content), usage)
    return content


# Provider dispatch
_PROVIDERS = {
    "google": _call_google,
    "anthropic": _call_anthropic,
    "openai": _call_openai,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)
async def call_vision_llm(
    system_prompt: str,
    parts: Sequence[VisionPart],
    credentials: ModelCredentials,
    model: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 2_000,
) -> str:
    """Send interleaved text/image parts to a vision model and return raw text.

    Retries on transient errors (rate limits, server errors).
    Raises LLMError immediately for bad requests or auth errors.
    """
    provider = credentials.provider
    model = model or credentials.model or config.DEFAULT_VISION_MODELS.get(provider, "")
    call_fn = _PROVIDERS.get(provider)
    if not call_fn:
        raise LLMError(
            f"Unknown provider: '{provider}'. Available: {list(_PROVIDERS.keys())}",
            provider=provider,
            model=model,
        )

    n_images = _count_images(parts)
    logger.info(
        "Vision call: provider=%s, model=%s, temp=%.1f, images=%d",
        provider, model, temperature, n_images,
    )
    try:
        return await call_fn(system_prompt, parts, model, credentials.api_key, temperature, max_tokens)
    except LLMError:
        raise
    except Exception as exc:
        clean_msg = _extract_error_message(exc, provider, model)
        logger.error("Vision call failed: %s", clean_msg)
        if _is_retryable(exc):
            raise  # let tenacity retry
        raise LLMError(clean_msg, provider=provider, model=model, cause=exc) from exc


class VisionClient(Protocol):
    async def generate(self, system_prompt: str, parts: Sequence[VisionPart]) -> str:
        """Return the model's raw text for one multimodal request."""


class LLMVisionClient:
    """VisionClient backed by call_vision_llm with per-stage settings."""

    def __init__(self, credentials: ModelCredentials, stage: str = "vision"):
        stage_conf = config.get_dop_llm_config(stage)
        self.credentials = credentials
        self.stage = stage
        self.model = credentials.model or (
            stage_conf["model"]
            if credentials.provider == stage_conf["provider"]
            else config.DEFAULT_VISION_MODELS.get(credentials.provider, "")
        )
        self.temperature = stage_conf["temperature"]
        self.max_tokens = stage_conf["max_tokens"]

    async def generate(self, system_prompt: str, parts: Sequence[VisionPart]) -> str:
        return await call_vision_llm(
            system_prompt,
            parts,
            self.credentials,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


def build_vision_client(credentials: ModelCredentials, stage: str = "vision") -> VisionClient:
    return LLMVisionClient(credentials, stage=stage)
