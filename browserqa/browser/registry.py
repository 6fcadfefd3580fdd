"""
Lookup table from provider discriminator to provider instance.
"""

import logging
from typing import Dict, Optional

from ..core.config import Config
from .base import BrowserProvider
from .browser_use_cloud import BrowserUseCloudProvider
from .hyperbrowser import HyperbrowserBrowserUseProvider, HyperbrowserHyperAgentProvider
from .models import DEFAULT_BROWSER_PROVIDER

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Resolves a settings discriminator to a provider; unknown ids get the default."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self._providers: Dict[str, BrowserProvider] = {}
        for provider_class in (
            HyperbrowserBrowserUseProvider,
            HyperbrowserHyperAgentProvider,
            BrowserUseCloudProvider,
        ):
            self.register(provider_class(self.config))

    def register(self, provider: BrowserProvider, provider_id: Optional[str] = None) -> None:
        self._providers[provider_id or provider.provider_id] = provider

    def get(self, provider_id: Optional[str]) -> BrowserProvider:
        key = (provider_id or "").strip()
        provider = self._providers.get(key)
        if provider is None:
            if key:
                logger.warning(
                    f"Unknown browser provider '{key}', using {DEFAULT_BROWSER_PROVIDER}",
                    extra={"metadata": {"provider": key}},
                )
            provider = self._providers[DEFAULT_BROWSER_PROVIDER]
        return provider
