"""Rendering provider adapters.

Every adapter implements RenderingProvider and raises only ProviderError,
whose kind is already classified into the closed ErrorKind taxonomy.
"""

from bulkgen.providers.base import (
    ProviderError,
    ProviderJobState,
    ProviderJobStatus,
    RenderingProvider,
    UnitRenderRequest,
    classify_provider_error,
)

__all__ = [
    "ProviderError",
    "ProviderJobState",
    "ProviderJobStatus",
    "RenderingProvider",
    "UnitRenderRequest",
    "classify_provider_error",
    "create_provider_from_env",
]


def create_provider_from_env() -> RenderingProvider:
    """Build the provider selected by RENDER_PROVIDER.

    Raises:
        ConfigurationError: For unknown providers or missing credentials
    """
    from bulkgen.config import (
        get_kie_api_key,
        get_kie_base_url,
        get_kie_callback_url,
        get_render_provider,
    )
    from bulkgen.exceptions import ConfigurationError
    from bulkgen.providers.kie import KieProvider
    from bulkgen.providers.stub import StubProvider

    provider_name = get_render_provider()
    if provider_name == "stub":
        return StubProvider()
    if provider_name == "kie":
        return KieProvider(
            api_key=get_kie_api_key(),
            base_url=get_kie_base_url(),
            callback_url=get_kie_callback_url(),
        )
    raise ConfigurationError(f"Unknown RENDER_PROVIDER: {provider_name!r}")
