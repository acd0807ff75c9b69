"""
Provider adapters for the shared inference loop.

    openrouter  chat completions via the openai SDK (OpenRouter base URL)
    openai      Responses API via the openai SDK, streaming
    gemini      generateContent via httpx

``create_inference_loop`` picks the adapter for ``config.provider`` and
fails fast with ``ProviderConfigError`` when the API key is missing.
"""

from agent.config import ProviderConfigError, SUPPORTED_PROVIDERS
from agent.retry import RetryPolicy


def create_inference_loop(config, registry, tool_runtime=None, retry_policy=None):
    provider = config.provider
    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderConfigError(f"unknown provider: {provider}")

    api_key = (config.api_key_for(provider) or "").strip()
    if not api_key:
        raise ProviderConfigError(f"missing API key for provider '{provider}'")

    retry_policy = retry_policy or RetryPolicy.from_config(config)

    if provider == "openrouter":
        from agent.providers.openrouter import OpenRouterInferenceLoop
        return OpenRouterInferenceLoop(api_key, registry, tool_runtime, retry_policy)
    if provider == "openai":
        from agent.providers.openai_responses import OpenAIResponsesInferenceLoop
        return OpenAIResponsesInferenceLoop(
            api_key, registry, tool_runtime, retry_policy, base_url=config.openai_base_url,
        )
    from agent.providers.gemini import GeminiInferenceLoop
    return GeminiInferenceLoop(api_key, registry, tool_runtime, retry_policy)
