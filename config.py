import os
from dataclasses import dataclass, field, fields

# ── Frame sampling ─────────────────────────────────────────────────────────────
# Live recordings start with a short interval so brief clips still get a few
# frames, then back off once the recording is clearly going to be long.
SHORT_INTERVAL = 2.0
LONG_INTERVAL = 10.0
INTERVAL_SWITCH_THRESHOLD = 10.0

# ── Analysis queue ─────────────────────────────────────────────────────────────
# Reasoning models can take minutes on a single image.
REQUEST_TIMEOUT = 180.0

# Pause between the end of one analysis request and the start of the next.
INTER_REQUEST_DELAY = 2.0

# How long the worker waits on an empty queue before re-checking for shutdown.
QUEUE_POLL_INTERVAL = 0.25

# Resize frames to this width (px) before sending to the API.
IMAGE_MAX_WIDTH = 1280
JPEG_QUALITY = 85

# ── Summarization ──────────────────────────────────────────────────────────────
# More descriptions than this are summarized in batches, then merged.
BATCH_SIZE = 30

TEMPERATURE = 0.3

FRAME_MAX_TOKENS = 500
SUMMARY_MAX_TOKENS = 1000
BATCH_SUMMARY_MAX_TOKENS = 800
MERGE_MAX_TOKENS = 1500

DEFAULT_PROVIDER = "openai"

FRAME_PROMPT = (
    "Describe what is shown in this screenshot of a screen recording: the "
    "application or website, visible text, and what the user appears to be doing. "
    "Be concise and factual."
)

# Conventional key variables, checked after RECAP_API_KEY.
_PROVIDER_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "siliconflow": "SILICONFLOW_API_KEY",
    "glm": "ZHIPUAI_API_KEY",
    "kimi": "MOONSHOT_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}


class ConfigError(ValueError):
    """Credentials, model or endpoint missing before any request is made."""


@dataclass(frozen=True)
class SummaryConfig:
    """
    Everything a summarization session needs, fixed for its whole lifetime.

    `base_url` may be left empty; the provider fills in its default endpoint.
    """

    provider: str = DEFAULT_PROVIDER
    api_key: str = field(default="", repr=False)
    model: str = ""
    base_url: str = ""
    request_timeout: float = REQUEST_TIMEOUT
    inter_request_delay: float = INTER_REQUEST_DELAY
    queue_poll_interval: float = QUEUE_POLL_INTERVAL
    batch_size: int = BATCH_SIZE
    temperature: float = TEMPERATURE
    image_max_width: int = IMAGE_MAX_WIDTH
    frame_prompt: str = FRAME_PROMPT

    def missing_fields(self) -> list[str]:
        return [name for name in ("provider", "api_key", "model") if not getattr(self, name).strip()]

    def validate(self) -> "SummaryConfig":
        missing = self.missing_fields()
        if missing:
            raise ConfigError(f"AI configuration incomplete, missing: {', '.join(missing)}")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be at least 1 (got {self.batch_size})")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive (got {self.request_timeout})")
        return self

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "SummaryConfig":
        """
        Build a config from RECAP_* environment variables.
        Keyword overrides win over the environment; unknown keys are rejected.
        """
        env = os.environ if environ is None else environ
        provider = (overrides.get("provider") or env.get("RECAP_PROVIDER") or DEFAULT_PROVIDER).strip().lower()

        api_key = env.get("RECAP_API_KEY", "")
        if not api_key and provider in _PROVIDER_KEY_VARS:
            api_key = env.get(_PROVIDER_KEY_VARS[provider], "")

        values = {
            "provider": provider,
            "api_key": api_key,
            "model": env.get("RECAP_MODEL", ""),
            "base_url": env.get("RECAP_BASE_URL", ""),
        }
        if env.get("RECAP_TIMEOUT"):
            values["request_timeout"] = _parse_number(env["RECAP_TIMEOUT"], float, "RECAP_TIMEOUT")
        if env.get("RECAP_BATCH_SIZE"):
            values["batch_size"] = _parse_number(env["RECAP_BATCH_SIZE"], int, "RECAP_BATCH_SIZE")
        if env.get("RECAP_DELAY"):
            values["inter_request_delay"] = _parse_number(env["RECAP_DELAY"], float, "RECAP_DELAY")

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["provider"] = provider
        return cls(**values)


def _parse_number(raw: str, kind, name: str):
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got {raw!r})") from None
