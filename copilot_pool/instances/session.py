"""Copilot token acquisition and background refresh for one instance."""

import asyncio

from copilot_pool.instances.state import Instance
from copilot_pool.logging.audit import account_id_var, get_logger
from copilot_pool.upstream.copilot import CopilotClient

logger = get_logger("instances")

# Floor for the refresh delay, so a short-lived token cannot spin the loop.
MIN_REFRESH_INTERVAL = 1.0


def refresh_delay(refresh_in: float, margin: float) -> float:
    return max(refresh_in - margin, MIN_REFRESH_INTERVAL)


async def setup_instance_token(instance: Instance, client: CopilotClient, margin: float = 60.0) -> None:
    """Fetch the first token, then keep it fresh in a background task.

    The initial fetch is awaited so the caller never sees an instance
    without a token; any failure propagates. Refresh failures are logged
    and the previous token stays in place until the next attempt.
    """
    grant = await client.fetch_token(instance.state)
    instance.state.copilot_token = grant.token
    logger.debug("Copilot token fetched", extra={"audit_data": {
        "account_id": instance.account.id,
        "refresh_in": grant.refresh_in,
    }})

    instance.refresh_task = asyncio.create_task(
        _refresh_loop(instance, client, margin, refresh_delay(grant.refresh_in, margin)),
        name=f"copilot-token-refresh-{instance.account.id}",
    )


async def _refresh_loop(instance: Instance, client: CopilotClient, margin: float, delay: float) -> None:
    account_id_var.set(instance.account.id)
    while True:
        await asyncio.sleep(delay)
        try:
            grant = await client.fetch_token(instance.state)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Copilot token refresh failed")
            continue
        instance.state.copilot_token = grant.token
        delay = refresh_delay(grant.refresh_in, margin)
        logger.debug("Copilot token refreshed", extra={"audit_data": {"refresh_in": grant.refresh_in}})


def cancel_refresh(instance: Instance) -> None:
    if instance.refresh_task is not None:
        instance.refresh_task.cancel()
        instance.refresh_task = None
