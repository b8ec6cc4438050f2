"""
Provider adapters — one class per AI service.

Each adapter knows how to:
  - build a vision request from (base64 image, prompt)
  - build a text-only summary request
  - send it with an explicit timeout
  - pull the answer text out of the response

OpenAI, SiliconFlow, GLM and Kimi all speak the OpenAI chat-completions
format and only differ in default endpoint and model naming. Claude goes
through the anthropic SDK. Adding a provider means adding one class to
PROVIDERS — nothing else changes.
"""

import logging
import re

import anthropic
import httpx

from config import FRAME_MAX_TOKENS, SUMMARY_MAX_TOKENS, ConfigError, SummaryConfig

log = logging.getLogger(__name__)

USER_AGENT = "screen-recap/0.1"
MODELS_TIMEOUT = 30.0


# ── Errors ────────────────────────────────────────────────────────────────────

class AnalysisError(Exception):
    """A single model request failed. The pipeline records it and moves on."""


class TransportError(AnalysisError):
    """Network failure or timeout."""


class ProviderError(AnalysisError):
    """The service answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ParseError(AnalysisError):
    """Response body is not valid JSON, or not shaped like a completion."""


class EmptyResponseError(AnalysisError):
    """Well-formed response whose content is empty."""


_STATUS_MESSAGES = {
    400: "Bad request",
    401: "Invalid API key or insufficient permissions",
    403: "Access denied, check the API key's permissions",
    404: "API endpoint not found, check the base URL",
    429: "Rate limit exceeded",
}


def describe_status(status: int, detail: str = "") -> str:
    """Human-readable message for an HTTP error status plus the provider's own detail."""
    if status in _STATUS_MESSAGES:
        base = _STATUS_MESSAGES[status]
    elif status >= 500:
        base = "Server error, try again later"
    else:
        base = "Request failed"
    base = f"{base} (HTTP {status})"
    return f"{base}: {detail}" if detail else base


# ── Answer extraction ─────────────────────────────────────────────────────────

_ANSWER_TAG = re.compile(r"<answer>(.*?)(?:</answer>|$)", re.DOTALL | re.IGNORECASE)
_ANSWER_MARKER = re.compile(
    r"(?:\b(?:final answer|answer)|最终答案|答案|回答)[ \t*]*[:：]",
    re.IGNORECASE,
)


def extract_answer(text: str) -> str:
    """
    Recover the final answer from a reasoning model's output.

    1. `<answer>...</answer>` present → the last such span (an unclosed tag
       at the end, e.g. cut off by max_tokens, runs to the end of the text)
    2. an "Answer:" marker anywhere → the rest of the line after the last one
       (or what follows, when the marker ends its line)
    3. otherwise → the text unchanged
    """
    if not text:
        return ""

    spans = _ANSWER_TAG.findall(text)
    if spans:
        return spans[-1].strip()

    markers = list(_ANSWER_MARKER.finditer(text))
    if markers:
        rest = text[markers[-1].end():].lstrip(" \t*")
        line = rest.split("\n", 1)[0].strip()
        return line or rest.strip()

    return text.strip()


# ── Base adapter ──────────────────────────────────────────────────────────────

class Provider:
    """OpenAI chat-completions adapter. Subclasses override defaults only."""

    name = "openai"
    label = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    default_models: tuple[str, ...] = ("gpt-4o", "gpt-4o-mini", "gpt-4.1")

    # Generic vision keywords, shared by every provider.
    vision_keywords: tuple[str, ...] = ("vision", "visual", "multimodal", "llava", "blip", "flamingo")

    def __init__(self, config: SummaryConfig, client=None):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).strip().rstrip("/")
        if not self.base_url:
            raise ConfigError(f"No base URL configured for provider '{self.name}'")
        self._client = client
        self._owns_client = client is None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.config.model!r}, base_url={self.base_url!r})"

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # -- request building --------------------------------------------------

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def build_request(self, image_b64: str, prompt: str, max_tokens: int = FRAME_MAX_TOKENS) -> dict:
        return {
            "model": self.config.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"},
                        },
                    ],
                }
            ],
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
        }

    def build_summary_request(self, text: str, system_prompt: str = "", max_tokens: int = SUMMARY_MAX_TOKENS) -> dict:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": text})
        return {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
        }

    # -- transport ---------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, request: dict, timeout: float):
        """POST a request and return the decoded JSON body."""
        log.debug("POST %s (model=%s, timeout=%.0fs)", self.endpoint, request.get("model"), timeout)
        try:
            response = await self._http().post(self.endpoint, json=request, headers=self.headers(), timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

        if not response.is_success:
            raise ProviderError(describe_status(response.status_code, _error_detail(response)), response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Response is not valid JSON: {response.text[:200]!r}") from e

    # -- response parsing --------------------------------------------------

    def parse_response(self, raw) -> str:
        if not isinstance(raw, dict):
            raise ParseError(f"Expected a JSON object, got {type(raw).__name__}")

        choices = raw.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ParseError("Response has no choices")
        message = choices[0].get("message")
        if not isinstance(message, dict) or "content" not in message:
            raise ParseError("First choice has no message content")

        content = message["content"]
        if isinstance(content, list):
            # Some servers return content as a list of typed parts.
            content = "\n".join(
                part.get("text", "") for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ParseError(f"Message content has unexpected type {type(content).__name__}")

        answer = extract_answer(content)
        if not answer:
            raise EmptyResponseError("Model returned empty content")
        return answer

    # -- high level --------------------------------------------------------

    async def describe_image(self, image_b64: str, prompt: str | None = None, timeout: float | None = None) -> str:
        request = self.build_request(image_b64, prompt or self.config.frame_prompt)
        raw = await self.send(request, timeout or self.config.request_timeout)
        return self.parse_response(raw)

    async def complete(self, text: str, system_prompt: str = "", max_tokens: int = SUMMARY_MAX_TOKENS,
                       timeout: float | None = None) -> str:
        request = self.build_summary_request(text, system_prompt, max_tokens)
        raw = await self.send(request, timeout or self.config.request_timeout)
        return self.parse_response(raw)

    # -- model discovery ---------------------------------------------------

    def is_vision_model(self, model_id: str) -> bool:
        lower = model_id.lower()
        if "gpt-4" in lower and ("vision" in lower or "4o" in lower):
            return True
        if lower.startswith(("gpt-4.1", "gpt-5")):
            return True
        return any(k in lower for k in self.vision_keywords)

    async def fetch_model_ids(self) -> list[str]:
        try:
            response = await self._http().get(f"{self.base_url}/models", headers=self.headers(), timeout=MODELS_TIMEOUT)
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e
        if not response.is_success:
            raise ProviderError(describe_status(response.status_code, _error_detail(response)), response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise ParseError("Model list is not valid JSON") from e
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise ParseError("Could not parse the model list")
        return [m["id"] for m in data["data"] if isinstance(m, dict) and m.get("id")]


class OpenAIProvider(Provider):
    pass


class SiliconFlowProvider(Provider):
    name = "siliconflow"
    label = "SiliconFlow"
    default_base_url = "https://api.siliconflow.cn/v1"
    default_models = ("Qwen/Qwen2.5-VL-72B-Instruct", "deepseek-ai/deepseek-vl2", "Qwen/QVQ-72B-Preview")
    vision_keywords = Provider.vision_keywords + ("internvl", "deepseek-vl", "cogvlm", "qvq", "vl", "stepfun-ai/step3")


class GLMProvider(Provider):
    name = "glm"
    label = "Zhipu AI (GLM)"
    default_base_url = "https://open.bigmodel.cn/api/paas/v4"
    default_models = ("glm-4v-plus", "glm-4v-flash")

    def is_vision_model(self, model_id: str) -> bool:
        lower = model_id.lower()
        if lower.startswith("glm") and "v" in lower[3:]:
            return True
        return super().is_vision_model(model_id)


class KimiProvider(Provider):
    name = "kimi"
    label = "Moonshot AI (Kimi)"
    default_base_url = "https://api.moonshot.cn/v1"
    default_models = ("moonshot-v1-8k-vision-preview", "moonshot-v1-32k-vision-preview")

    def is_vision_model(self, model_id: str) -> bool:
        # Moonshot does not tag its multimodal models consistently.
        lower = model_id.lower()
        return "moonshot" in lower or "kimi" in lower or super().is_vision_model(model_id)


class ClaudeProvider(Provider):
    """Anthropic Messages API through the official SDK."""

    name = "claude"
    label = "Anthropic (Claude)"
    default_base_url = "https://api.anthropic.com"
    default_models = ("claude-sonnet-4-5", "claude-haiku-4-5")

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/messages"

    def headers(self) -> dict:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def build_request(self, image_b64: str, prompt: str, max_tokens: int = FRAME_MAX_TOKENS) -> dict:
        return {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": "image/jpeg", "data": image_b64},
                        },
                    ],
                }
            ],
        }

    def build_summary_request(self, text: str, system_prompt: str = "", max_tokens: int = SUMMARY_MAX_TOKENS) -> dict:
        request = {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": text}],
        }
        if system_prompt:
            request["system"] = system_prompt
        return request

    def _sdk(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            # No SDK-level retries: failed frames are recorded, not retried.
            self._client = anthropic.AsyncAnthropic(
                api_key=self.config.api_key,
                base_url=self.base_url,
                max_retries=0,
                default_headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None

    async def send(self, request: dict, timeout: float):
        try:
            return await self._sdk().messages.create(**request, timeout=timeout)
        except anthropic.APITimeoutError as e:
            raise TransportError(f"Request timed out after {timeout:.0f}s") from e
        except anthropic.APIConnectionError as e:
            raise TransportError(f"Network error: {e}") from e
        except anthropic.APIStatusError as e:
            raise ProviderError(describe_status(e.status_code, _sdk_error_detail(e)), e.status_code) from e

    def parse_response(self, raw) -> str:
        blocks = getattr(raw, "content", None)
        if not isinstance(blocks, list):
            raise ParseError("Response has no content blocks")
        text = "\n".join(b.text for b in blocks if getattr(b, "type", None) == "text")
        answer = extract_answer(text)
        if not answer:
            raise EmptyResponseError("Model returned empty content")
        return answer

    def is_vision_model(self, model_id: str) -> bool:
        # Every Claude 3+ model accepts images.
        return model_id.lower().startswith("claude-") and "claude-2" not in model_id.lower()

    async def fetch_model_ids(self) -> list[str]:
        try:
            return [m.id async for m in self._sdk().models.list(timeout=MODELS_TIMEOUT)]
        except anthropic.APIConnectionError as e:
            raise TransportError(f"Network error: {e}") from e
        except anthropic.APIStatusError as e:
            raise ProviderError(describe_status(e.status_code, _sdk_error_detail(e)), e.status_code) from e


PROVIDERS: dict[str, type[Provider]] = {
    cls.name: cls
    for cls in (OpenAIProvider, SiliconFlowProvider, GLMProvider, KimiProvider, ClaudeProvider)
}


def get_provider(config: SummaryConfig, client=None, require_model: bool = True) -> Provider:
    """
    Validate `config` and return the adapter for its provider.
    Raises ConfigError before any request is attempted.
    """
    if require_model:
        config.validate()
    elif not config.api_key.strip():
        raise ConfigError("AI configuration incomplete, missing: api_key")

    try:
        cls = PROVIDERS[config.provider.strip().lower()]
    except KeyError:
        known = ", ".join(sorted(PROVIDERS))
        raise ConfigError(f"Unknown provider '{config.provider}' (known: {known})") from None
    return cls(config, client=client)


async def list_models(config: SummaryConfig, client=None,
                      fallback_to_defaults: bool = True) -> tuple[list[str], str]:
    """
    Fetch the provider's model list and keep the vision-capable ones.
    Falls back to every model (with a warning message) when none look like vision models,
    and to the provider's known vision models when it has no `/models` endpoint (HTTP 404).
    Returns (model_ids, status_message).
    """
    async with get_provider(config, client=client, require_model=False) as provider:
        try:
            ids = await provider.fetch_model_ids()
        except ProviderError as e:
            if e.status != 404 or not fallback_to_defaults:
                raise
            log.info("%s has no model list endpoint, using known models", provider.label)
            return list(provider.default_models), f"{provider.label}: model list unavailable, showing known vision models"

    vision = [m for m in ids if provider.is_vision_model(m)]
    if vision:
        return vision, f"{provider.label}: found {len(vision)} vision models"
    return ids, f"{provider.label}: found {len(ids)} models (confirm the one you pick supports images)"


async def check_connection(config: SummaryConfig, client=None) -> tuple[bool, str]:
    """Check credentials and endpoint by listing models. Returns (ok, message)."""
    try:
        _, message = await list_models(config, client=client, fallback_to_defaults=False)
    except ConfigError as e:
        return False, str(e)
    except AnalysisError as e:
        return False, f"Connection failed: {e}"
    return True, f"Connected. {message}"


def _error_detail(response: httpx.Response) -> str:
    """Pull the provider's own error message out of an error response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if payload.get("message"):
            return str(payload["message"])
    return ""


def _sdk_error_detail(e: anthropic.APIStatusError) -> str:
    body = e.body
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return ""
