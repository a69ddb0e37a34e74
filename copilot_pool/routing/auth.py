"""Binds each proxy request to one account session.

A key matching an account's own API key targets that account directly.
Otherwise, when the pool is enabled and the key matches the pool key, an
account is chosen by the pool's strategy. Account keys are checked first,
so a pool key that collides with an account key resolves to the account.
"""

import hmac
from dataclasses import dataclass

from fastapi import Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from copilot_pool.accounts.models import Account
from copilot_pool.accounts.store import AccountStore
from copilot_pool.instances.registry import InstanceRegistry
from copilot_pool.instances.state import SessionState
from copilot_pool.logging.audit import account_id_var
from copilot_pool.routing.selector import AccountSelector
from copilot_pool.upstream.errors import ProxyError

api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class ProxyBinding:
    account: Account
    state: SessionState
    pool_mode: bool = False
    strategy: str | None = None  # set only in pool mode


def extract_api_key(
    api_key: str | None, credentials: HTTPAuthorizationCredentials | None
) -> str | None:
    if api_key and api_key.strip():
        return api_key.strip()
    if credentials and credentials.credentials.strip():
        return credentials.credentials.strip()
    return None


async def resolve_binding(
    api_key: str | None,
    store: AccountStore,
    registry: InstanceRegistry,
    selector: AccountSelector,
) -> ProxyBinding:
    if not api_key:
        raise ProxyError(401, "Unauthorized", "authentication_error")

    account = await store.get_by_api_key(api_key)
    if account is not None:
        state = registry.get_state(account.id)
        if state is None:
            raise ProxyError(503, "Account instance not running")
        return ProxyBinding(account=account, state=state)

    pool = await store.get_pool_config()
    if pool.enabled and pool.api_key and hmac.compare_digest(api_key.encode(), pool.api_key.encode()):
        selection = await selector.select_account(pool.strategy)
        if selection is None:
            raise ProxyError(503, "No available accounts in pool")
        return ProxyBinding(
            account=selection.account,
            state=selection.state,
            pool_mode=True,
            strategy=pool.strategy,
        )

    raise ProxyError(401, "Unauthorized", "authentication_error")


async def authenticate(
    request: Request,
    api_key: str | None = Security(api_key_header),
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> ProxyBinding:
    """FastAPI dependency returning the account binding for this request."""
    runtime = request.app.state.runtime
    binding = await resolve_binding(
        extract_api_key(api_key, credentials),
        runtime.store,
        runtime.registry,
        runtime.selector,
    )
    account_id_var.set(binding.account.id)
    return binding
