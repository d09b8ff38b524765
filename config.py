"""config.py

Global configuration, constants, and logging setup for the MCP evaluation engine.
"""

import logging
import sys

# =========================
# Configuration & Constants
# =========================

DEFAULT_CONCURRENCY = 4
MAX_CONCURRENCY = 8
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_STEPS = 10

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant with access to MCP tools"

DEFAULT_SUITE_NAME = "MCP Evals"

# Providers a test may reference. Anything else (e.g. "ollama") is rejected before running.
SUPPORTED_PROVIDERS = ("openai", "anthropic", "deepseek")

# OpenAI-compatible endpoints per provider (None = SDK default).
PROVIDER_BASE_URLS = {
    "openai": None,
    "anthropic": "https://api.anthropic.com/v1/",
    "deepseek": "https://api.deepseek.com/v1",
}

# Model ids served through the evaluation backend instead of a provider SDK.
# Overridable with EVALS_FIRST_PARTY_MODELS (comma separated).
DEFAULT_FIRST_PARTY_MODELS = frozenset(
    {
        "meta-llama/llama-3.3-70b-instruct",
        "openai/gpt-oss-120b",
        "x-ai/grok-4-fast",
        "openai/gpt-5-nano",
    }
)

ENV_BACKEND_URL = "EVALS_BACKEND_URL"
ENV_BACKEND_TOKEN = "EVALS_BACKEND_TOKEN"
ENV_FIRST_PARTY_MODELS = "EVALS_FIRST_PARTY_MODELS"
ENV_TRACKER_API_KEY = "EVALS_API_KEY"
ENV_TRACKER_URL = "EVALS_TRACKER_URL"

BACKEND_REQUEST_TIMEOUT_S = 120.0
TRACKER_REQUEST_TIMEOUT_S = 15.0

# =========================
# Logging
# =========================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    handlers=[logging.FileHandler("evals_audit.log"), logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)
