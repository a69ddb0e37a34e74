"""Per-account session state and instance records."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from copilot_pool.accounts.models import Account


class InstanceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class SessionState:
    """Everything a handler needs to call Copilot on behalf of one account."""

    github_token: str
    account_type: str = "individual"
    copilot_token: str | None = None
    models: dict | None = None  # raw /models response
    vscode_version: str | None = None
    manual_approve: bool = False
    rate_limit_wait: bool = False

    @classmethod
    def from_account(cls, account: Account) -> "SessionState":
        return cls(github_token=account.github_token, account_type=account.account_type)

    def find_model(self, model_id: str) -> dict | None:
        if not self.models:
            return None
        for model in self.models.get("data", []):
            if model.get("id") == model_id:
                return model
        return None


@dataclass
class Instance:
    account: Account
    state: SessionState
    status: InstanceStatus = InstanceStatus.STOPPED
    error: str | None = None
    refresh_task: asyncio.Task | None = field(default=None, repr=False)
