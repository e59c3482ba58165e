"""Engine configuration: LLM providers, per-stage model assignments, vocab locales."""

import os
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# LLM Provider API Keys
# ---------------------------------------------------------------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")

# ---------------------------------------------------------------------------
# Model names (centralized so they're easy to update)
# ---------------------------------------------------------------------------
GOOGLE_VISION_MODEL = "gemini-2.5-flash"
ANTHROPIC_VISION_MODEL = "claude-sonnet-4-5"
OPENAI_VISION_MODEL = "gpt-4.1-mini"

DEFAULT_VISION_MODELS: dict[str, str] = {
    "google": GOOGLE_VISION_MODEL,
    "anthropic": ANTHROPIC_VISION_MODEL,
    "openai": OPENAI_VISION_MODEL,
}

# ---------------------------------------------------------------------------
# Per-Stage Model Assignments
#
# Two stages call a model:
#   vision: continuity comparison of previous/current shot
#   decision: deep retry reasoning on a failed shot
# Override via env: DOP_VISION_PROVIDER=anthropic
#                   DOP_DECISION_MODEL=gemini-2.5-pro
# ---------------------------------------------------------------------------

DEFAULT_PROVIDER = os.getenv("DOP_DEFAULT_PROVIDER", "google")

DOP_LLM_CONFIG: dict[str, dict] = {
    # Vision check runs after every generation in continuity mode; keep it fast.
    "vision": {
        "provider": os.getenv("DOP_VISION_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("DOP_VISION_MODEL", ""),
        "temperature": 0.2,
        "max_tokens": 2_000,
    },
    # Decision only runs when offline classification is inconclusive.
    "decision": {
        "provider": os.getenv("DOP_DECISION_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("DOP_DECISION_MODEL", ""),
        "temperature": 0.3,
        "max_tokens": 2_000,
    },
}


def get_dop_llm_config(stage: str) -> dict:
    """Return the LLM config for an engine stage, with defaults.

    An empty model resolves to the provider's default vision model.
    """
    defaults = {
        "provider": DEFAULT_PROVIDER,
        "model": "",
        "temperature": 0.2,
        "max_tokens": 2_000,
    }
    stage_conf = {k: v for k, v in DOP_LLM_CONFIG.get(stage, {}).items() if v != ""}
    merged = {**defaults, **stage_conf}
    if not merged["model"]:
        merged["model"] = DEFAULT_VISION_MODELS.get(merged["provider"], GOOGLE_VISION_MODEL)
    return merged


# ---------------------------------------------------------------------------
# Continuity heuristics
# ---------------------------------------------------------------------------

# Comma-separated vocabulary locales merged for keyword matching.
DOP_LOCALES = [
    loc.strip() for loc in os.getenv("DOP_LOCALES", "en,vi").split(",") if loc.strip()
]

# Attach template-based corrections to offline `retry` fallbacks.
DOP_OFFLINE_CORRECTIONS = os.getenv("DOP_OFFLINE_CORRECTIONS", "").strip().lower() in {
    "1", "true", "yes", "on",
}

# Remote image fetches for vision payloads.
IMAGE_FETCH_TIMEOUT_SECONDS = float(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", "20"))

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
