"""Shared constants for Loaf.

Import-safe module with no dependencies, can be imported from anywhere
without risk of circular imports.
"""

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_HTTP_REFERER = "https://github.com/crabmiau/loaf"
OPENROUTER_X_TITLE = "loaf"

OPENAI_BASE_URL = "https://api.openai.com/v1"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODELS = {
    "openrouter": "openai/gpt-5-mini",
    "openai": "gpt-5",
    "gemini": "gemini-2.5-flash",
}

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are loaf, a helpful command-line assistant. You can run javascript "
    "with the available tools, including long-lived background sessions. "
    "Prefer short, direct answers."
)

NO_RESPONSE_PLACEHOLDER = "(No response text returned)"

# Rate-limit retry defaults (overridable through config / env)
MAX_429_RETRY_ATTEMPTS = 8
RETRY_BASE_DELAY_MS = 1_250
RETRY_MAX_DELAY_MS = 20_000
RETRY_JITTER_MS = 500
RETRY_MIN_DELAY_MS = 250

# Provider function names must match this and stay under the length cap
PROVIDER_TOOL_NAME_MAX_CHARS = 64
