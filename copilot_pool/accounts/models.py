"""Account and pool configuration records."""

from dataclasses import dataclass

STRATEGY_ROUND_ROBIN = "round-robin"
STRATEGY_PRIORITY = "priority"
STRATEGY_QUOTA = "quota"
STRATEGIES = (STRATEGY_ROUND_ROBIN, STRATEGY_PRIORITY, STRATEGY_QUOTA)


@dataclass
class Account:
    id: str
    name: str
    github_token: str
    account_type: str = "individual"  # "individual" | "business" | "enterprise"
    api_key: str = ""  # per-account proxy key
    enabled: bool = True
    priority: int = 0  # higher = preferred
    created_at: str = ""


@dataclass
class PoolConfig:
    api_key: str
    enabled: bool = False
    strategy: str = STRATEGY_ROUND_ROBIN  # one of STRATEGIES
