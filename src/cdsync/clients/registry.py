"""Provider registry: maps provider names to client factories."""

import logging
from typing import Callable, Dict, List

from ..errors import ConfigError
from ..models import Account
from .base import Capabilities, CloudClient
from .onedrive_client import OneDriveClient

logger = logging.getLogger(__name__)

# factory(account, config, token_data, capabilities) -> CloudClient
ClientFactory = Callable[..., CloudClient]


class ProviderRegistry:
    """Registry of cloud client factories keyed by provider name."""

    def __init__(self):
        self._factories: Dict[str, ClientFactory] = {}

    def register(self, provider: str, factory: ClientFactory) -> None:
        if provider in self._factories:
            logger.debug(f"Replacing client factory for {provider}")
        self._factories[provider] = factory

    def providers(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, provider: str) -> bool:
        return provider in self._factories

    def create(self, account: Account, config, token_data=None) -> CloudClient:
        """Build a client for a configured account.

        Args:
            account: Account to bind the client to
            config: Config instance (sync folder name, size limits)
            token_data: Decrypted credentials for the account, if any

        Raises:
            ConfigError: If no factory is registered for the provider
        """
        factory = self._factories.get(account.provider)
        if factory is None:
            raise ConfigError(
                f"No client registered for provider '{account.provider}' "
                f"(known: {', '.join(self.providers()) or 'none'})"
            )
        capabilities = Capabilities(max_object_size=config.max_object_size_for(account.provider))
        return factory(account, config, token_data, capabilities)


def _onedrive_factory(account: Account, config, token_data, capabilities: Capabilities) -> CloudClient:
    def save_token(new_token_data):
        config.save_token(account.credentials_handle, new_token_data)

    return OneDriveClient(
        account.account_id,
        token_data or {},
        client_id=config.get('client_id') or None,
        sync_folder_name=config.sync_folder_name,
        capabilities=capabilities,
        on_token_refresh=save_token,
        retry_attempts=config.retry_attempts,
    )


def default_registry() -> ProviderRegistry:
    """Return a registry with the built-in providers registered."""
    registry = ProviderRegistry()
    registry.register(OneDriveClient.provider, _onedrive_factory)
    return registry
