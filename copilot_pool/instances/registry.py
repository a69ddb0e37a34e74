"""In-memory registry of per-account Copilot sessions.

Each account id maps to at most one Instance. Entries are created on the
first start attempt and are never removed, so the status and last error
of a stopped or failed instance stay queryable.
"""

import asyncio

from copilot_pool.accounts.models import Account
from copilot_pool.accounts.usage_cache import UsageCache
from copilot_pool.instances.session import cancel_refresh, setup_instance_token
from copilot_pool.instances.state import Instance, InstanceStatus, SessionState
from copilot_pool.logging.audit import get_logger
from copilot_pool.upstream.copilot import CopilotClient

logger = get_logger("instances")


class InstanceRegistry:
    """Owns the lifecycle of every account session in this process."""

    def __init__(
        self,
        client: CopilotClient,
        usage_cache: UsageCache | None = None,
        refresh_margin: float = 60.0,
        prime_usage: bool = False,
    ):
        self._client = client
        self._usage_cache = usage_cache
        self._refresh_margin = refresh_margin
        self._prime_usage = prime_usage
        self._instances: dict[str, Instance] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._locks.setdefault(account_id, asyncio.Lock())

    async def start_instance(self, account: Account) -> Instance:
        async with self._lock_for(account.id):
            existing = self._instances.get(account.id)
            if existing is not None and existing.status == InstanceStatus.RUNNING:
                logger.warning("Instance already running", extra={"audit_data": {
                    "account_id": account.id,
                }})
                return existing

            instance = Instance(account=account, state=SessionState.from_account(account))
            self._instances[account.id] = instance
            try:
                instance.state.vscode_version = await self._client.fetch_vscode_version()
                await setup_instance_token(instance, self._client, self._refresh_margin)
                instance.state.models = await self._client.fetch_models(instance.state)
            except Exception as e:
                cancel_refresh(instance)
                instance.status = InstanceStatus.ERROR
                instance.error = str(e)
                logger.error("Instance failed to start", extra={"audit_data": {
                    "account_id": account.id,
                    "error": instance.error,
                }})
                raise

            instance.status = InstanceStatus.RUNNING
            instance.error = None
            logger.info("Instance started", extra={"audit_data": {
                "account_id": account.id,
                "account_name": account.name,
                "model_count": len(instance.state.models.get("data", [])),
            }})

        if self._prime_usage:
            await self.get_usage(account.id)
        return instance

    async def stop_instance(self, account_id: str) -> None:
        async with self._lock_for(account_id):
            instance = self._instances.get(account_id)
            if instance is None:
                return
            cancel_refresh(instance)
            instance.status = InstanceStatus.STOPPED
            logger.info("Instance stopped", extra={"audit_data": {"account_id": account_id}})

    async def stop_all(self) -> None:
        for account_id in list(self._instances):
            await self.stop_instance(account_id)

    def get_instance(self, account_id: str) -> Instance | None:
        return self._instances.get(account_id)

    def get_status(self, account_id: str) -> InstanceStatus:
        instance = self._instances.get(account_id)
        return instance.status if instance else InstanceStatus.STOPPED

    def get_error(self, account_id: str) -> str | None:
        instance = self._instances.get(account_id)
        return instance.error if instance else None

    def get_state(self, account_id: str) -> SessionState | None:
        """Session state, only while the instance is running."""
        instance = self._instances.get(account_id)
        if instance is None or instance.status != InstanceStatus.RUNNING:
            return None
        return instance.state

    async def get_usage(self, account_id: str) -> dict | None:
        """Fetch live quota usage and record it in the usage cache.

        Returns None when the instance is not running or the fetch fails.
        """
        state = self.get_state(account_id)
        if state is None:
            return None
        try:
            usage = await self._client.fetch_usage(state)
            if self._usage_cache is not None:
                await self._usage_cache.set(account_id, usage)
        except Exception as e:
            logger.warning("Usage fetch failed", extra={"audit_data": {
                "account_id": account_id,
                "error": str(e),
            }})
            return None
        return usage
