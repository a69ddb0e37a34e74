"""Cross-account retry for pool-mode requests."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from starlette.responses import Response

from copilot_pool.accounts.models import Account
from copilot_pool.instances.state import SessionState
from copilot_pool.logging.audit import account_id_var, get_logger
from copilot_pool.routing.auth import ProxyBinding
from copilot_pool.routing.selector import AccountSelector

logger = get_logger("routing")

Handler = Callable[[dict, SessionState], Awaitable[Response]]


@dataclass
class RetryResult:
    response: Response
    account: Account  # account that produced ``response``
    attempts: int


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def with_pool_retry(
    binding: ProxyBinding,
    body: dict,
    handler: Handler,
    selector: AccountSelector,
) -> RetryResult:
    """Run ``handler`` and, in pool mode, retry on other accounts.

    ``body`` is already parsed, so every attempt replays the same payload.
    Each failing account is excluded from further selection. When no
    candidate is left the first failing response is returned unchanged.
    Handlers report upstream errors before streaming starts, so a retry
    never follows a partially sent body.
    """
    response = await handler(body, binding.state)
    if not binding.pool_mode or not is_retryable_status(response.status_code):
        return RetryResult(response=response, account=binding.account, attempts=1)

    first = RetryResult(response=response, account=binding.account, attempts=1)
    exclude = {binding.account.id}
    attempts = 1
    failed_account, failed_status = binding.account, response.status_code

    while True:
        logger.warning("Retryable upstream status, trying another account", extra={"audit_data": {
            "failed_account_id": failed_account.id,
            "upstream_status": failed_status,
            "attempt": attempts,
        }})
        selection = await selector.select_account(binding.strategy, exclude)
        if selection is None:
            first.attempts = attempts
            return first

        exclude.add(selection.account.id)
        attempts += 1
        account_id_var.set(selection.account.id)
        response = await handler(body, selection.state)
        if not is_retryable_status(response.status_code):
            return RetryResult(response=response, account=selection.account, attempts=attempts)
        failed_account, failed_status = selection.account, response.status_code
