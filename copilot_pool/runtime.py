"""Process-wide services, built once and handed to the app."""

from dataclasses import dataclass

import httpx

from copilot_pool.accounts.store import AccountStore, JSONAccountStore
from copilot_pool.accounts.usage_cache import UsageCache
from copilot_pool.config.settings import Settings, get_settings
from copilot_pool.instances.registry import InstanceRegistry
from copilot_pool.logging.audit import get_logger
from copilot_pool.routing.selector import AccountSelector
from copilot_pool.upstream.copilot import CopilotClient

logger = get_logger("instances")


@dataclass
class ProxyRuntime:
    store: AccountStore
    usage_cache: UsageCache
    client: CopilotClient
    registry: InstanceRegistry
    selector: AccountSelector

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        store: AccountStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ProxyRuntime":
        settings = settings or get_settings()
        store = store or JSONAccountStore(settings.accounts_path)
        usage_cache = UsageCache(settings.usage_cache_path)
        client = CopilotClient(settings, transport=transport)
        registry = InstanceRegistry(
            client,
            usage_cache=usage_cache,
            refresh_margin=settings.token_refresh_margin_seconds,
            prime_usage=settings.prime_usage_on_start,
        )
        return cls(
            store=store,
            usage_cache=usage_cache,
            client=client,
            registry=registry,
            selector=AccountSelector(store, registry, usage_cache),
        )

    async def auto_start(self) -> int:
        """Start every enabled account; returns how many reached running."""
        started = 0
        for account in await self.store.get_accounts():
            if not account.enabled:
                continue
            try:
                await self.registry.start_instance(account)
            except Exception:
                # already recorded on the registry entry
                continue
            started += 1
        logger.info("Auto-start finished", extra={"audit_data": {"running": started}})
        return started

    async def shutdown(self) -> None:
        await self.registry.stop_all()
        await self.client.close()
