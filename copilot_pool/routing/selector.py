"""Pool-mode account selection.

The round-robin cursor belongs to the selector instance and is shared by
every pool request regardless of strategy; it only advances when
round-robin actually picks the winner. Candidate sets change as accounts
start and stop, so rotation is a best-effort fairness heuristic.
"""

from dataclasses import dataclass

from copilot_pool.accounts.models import STRATEGY_PRIORITY, STRATEGY_QUOTA, Account
from copilot_pool.accounts.store import AccountStore
from copilot_pool.accounts.usage_cache import UsageCache
from copilot_pool.instances.registry import InstanceRegistry
from copilot_pool.instances.state import SessionState
from copilot_pool.logging.audit import get_logger

logger = get_logger("selector")

QUOTA_CATEGORIES = ("premium_interactions", "chat", "completions")
NO_USAGE_SCORE = -1.0


@dataclass
class Selection:
    account: Account
    state: SessionState


def quota_score(usage: dict | None) -> float:
    """Mean remaining fraction across the quota categories present.

    Unlimited categories count as fully available, categories with no
    entitlement as exhausted. No usage data at all scores -1.
    """
    if not usage:
        return NO_USAGE_SCORE
    snapshots = usage.get("quota_snapshots") or {}
    fractions = []
    for category in QUOTA_CATEGORIES:
        snapshot = snapshots.get(category)
        if not isinstance(snapshot, dict):
            continue
        if snapshot.get("unlimited"):
            fractions.append(1.0)
            continue
        entitlement = snapshot.get("entitlement") or 0
        if entitlement <= 0:
            fractions.append(0.0)
        else:
            fractions.append((snapshot.get("remaining") or 0) / entitlement)
    if not fractions:
        return NO_USAGE_SCORE
    return sum(fractions) / len(fractions)


class AccountSelector:
    """Picks one running account for a pool-mode request."""

    def __init__(self, store: AccountStore, registry: InstanceRegistry, usage_cache: UsageCache | None = None):
        self._store = store
        self._registry = registry
        self._usage_cache = usage_cache
        self._cursor = 0

    async def candidates(self, exclude: set[str] | None = None) -> list[Account]:
        exclude = exclude or set()
        return [
            account
            for account in await self._store.get_accounts()
            if account.enabled
            and account.id not in exclude
            and self._registry.get_state(account.id) is not None
        ]

    async def select_account(self, strategy: str, exclude: set[str] | None = None) -> Selection | None:
        running = await self.candidates(exclude)
        if not running:
            return None

        if strategy == STRATEGY_PRIORITY:
            selected = sorted(running, key=lambda a: a.priority, reverse=True)[0]
        elif strategy == STRATEGY_QUOTA:
            selected = await self._pick_by_quota(running)
        else:
            selected = self._pick_round_robin(running)

        state = self._registry.get_state(selected.id)
        if state is None:
            return None
        return Selection(account=selected, state=state)

    def _pick_round_robin(self, running: list[Account]) -> Account:
        self._cursor %= len(running)
        selected = running[self._cursor]
        self._cursor = (self._cursor + 1) % len(running)
        return selected

    async def _pick_by_quota(self, running: list[Account]) -> Account:
        cached = await self._usage_cache.all() if self._usage_cache else {}
        best, best_score = running[0], NO_USAGE_SCORE
        for account in running:
            entry = cached.get(account.id)
            score = quota_score(entry.usage if entry else None)
            if score > best_score:
                best, best_score = account, score

        if best_score == NO_USAGE_SCORE:
            logger.debug("No cached usage for any candidate, using round-robin")
            return self._pick_round_robin(running)
        return best
