"""Provider registry: read-only lookup from provider id to LLMProvider."""

import logging
from collections.abc import AsyncIterator

from blockflow.config import EngineConfig
from blockflow.llm.litellm import LiteLLMProvider
from blockflow.llm.provider import LLMProvider, ProviderRequest, ProviderResult
from blockflow.llm.stream_events import StreamEvent


class ProviderRegistry:
    """
    Maps provider ids ("openai", "anthropic", ...) to provider instances.

    Resolution order: explicit provider id, then the prefix of a
    ``provider/model`` string, then the default provider.
    """

    def __init__(self, default: LLMProvider | None = None, logger: logging.Logger | None = None):
        self._providers: dict[str, LLMProvider] = {}
        self._default = default
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ProviderRegistry":
        """Registry whose default provider is LiteLLM configured from EngineConfig."""
        return cls(
            default=LiteLLMProvider(
                model=config.model,
                api_key=config.api_key,
                api_base=config.api_base,
            )
        )

    def register(self, provider_id: str, provider: LLMProvider) -> None:
        self._providers[provider_id] = provider

    def set_default(self, provider: LLMProvider) -> None:
        self._default = provider

    def resolve(self, provider_id: str | None = None, model: str = "") -> LLMProvider:
        """Find the provider for a block. Raises LookupError if nothing matches."""
        if provider_id and provider_id in self._providers:
            return self._providers[provider_id]
        if "/" in model:
            prefix = model.split("/", 1)[0]
            if prefix in self._providers:
                return self._providers[prefix]
        if self._default is not None:
            return self._default
        raise LookupError(f"No provider registered for '{provider_id or model}'")

    async def execute_provider_request(
        self, provider_id: str | None, request: ProviderRequest
    ) -> ProviderResult | AsyncIterator[StreamEvent]:
        """Run a request: a stream iterator when ``request.stream`` is set, else one round-trip."""
        provider = self.resolve(provider_id, request.model)
        if request.stream:
            return provider.stream(request)
        return await provider.complete(request)
