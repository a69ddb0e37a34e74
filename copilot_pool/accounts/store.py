"""Account store abstraction + JSON file implementation.

The JSON store keeps accounts and the pool config in a single file and
rewrites the whole file on every mutation (read-modify-write, no locking).
Two concurrent writers can therefore lose one another's update; mutations
are admin-driven and rare, so this is accepted.
"""

import dataclasses
import hmac
import json
import os
import secrets
import tempfile
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from copilot_pool.accounts.models import STRATEGIES, Account, PoolConfig

_ACCOUNT_FIELDS = {f.name for f in dataclasses.fields(Account)}
_IMMUTABLE_FIELDS = {"id", "api_key", "created_at"}


def generate_api_key(prefix: str = "cpa") -> str:
    return f"{prefix}-{secrets.token_hex(16)}"


class AccountStore(ABC):
    """Abstract base for account and pool config persistence."""

    @abstractmethod
    async def get_accounts(self) -> list[Account]:
        ...

    @abstractmethod
    async def get_by_api_key(self, api_key: str) -> Account | None:
        """Look up an account by its proxy API key. Returns None if not found."""
        ...

    @abstractmethod
    async def get_pool_config(self) -> PoolConfig:
        """Return the pool config, creating it with a fresh key on first access."""
        ...

    async def get_account(self, account_id: str) -> Account | None:
        for account in await self.get_accounts():
            if account.id == account_id:
                return account
        return None


class JSONAccountStore(AccountStore):
    """File-backed store: ``{"accounts": [...], "pool": {...}}``."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def _read(self) -> dict:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {"accounts": [], "pool": None}
        data.setdefault("accounts", [])
        data.setdefault("pool", None)
        return data

    def _write(self, data: dict) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _to_account(entry: dict) -> Account:
        return Account(**{k: v for k, v in entry.items() if k in _ACCOUNT_FIELDS})

    async def get_accounts(self) -> list[Account]:
        return [self._to_account(entry) for entry in self._read()["accounts"]]

    async def get_by_api_key(self, api_key: str) -> Account | None:
        """Constant-time key lookup across all accounts."""
        match: Account | None = None
        for account in await self.get_accounts():
            # Always iterate all keys to maintain constant-time behavior
            if account.api_key and hmac.compare_digest(api_key.encode(), account.api_key.encode()):
                match = account
        return match

    async def add_account(
        self,
        name: str,
        github_token: str,
        account_type: str = "individual",
        enabled: bool = True,
        priority: int = 0,
    ) -> Account:
        data = self._read()
        account = Account(
            id=str(uuid.uuid4()),
            name=name,
            github_token=github_token,
            account_type=account_type,
            api_key=generate_api_key(),
            enabled=enabled,
            priority=priority,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        data["accounts"].append(dataclasses.asdict(account))
        self._write(data)
        return account

    async def update_account(self, account_id: str, **updates) -> Account | None:
        unknown = set(updates) - (_ACCOUNT_FIELDS - _IMMUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update account fields: {sorted(unknown)}")
        return self._replace_account(account_id, updates)

    async def regenerate_api_key(self, account_id: str) -> Account | None:
        return self._replace_account(account_id, {"api_key": generate_api_key()})

    def _replace_account(self, account_id: str, updates: dict) -> Account | None:
        data = self._read()
        for index, entry in enumerate(data["accounts"]):
            if entry.get("id") == account_id:
                data["accounts"][index] = {**entry, **updates}
                self._write(data)
                return self._to_account(data["accounts"][index])
        return None

    async def delete_account(self, account_id: str) -> bool:
        data = self._read()
        remaining = [e for e in data["accounts"] if e.get("id") != account_id]
        if len(remaining) == len(data["accounts"]):
            return False
        data["accounts"] = remaining
        self._write(data)
        return True

    async def get_pool_config(self) -> PoolConfig:
        data = self._read()
        if data["pool"] is None:
            data["pool"] = dataclasses.asdict(PoolConfig(api_key=generate_api_key("cpp")))
            self._write(data)
        return PoolConfig(**data["pool"])

    async def update_pool_config(
        self, enabled: bool | None = None, strategy: str | None = None
    ) -> PoolConfig:
        if strategy is not None and strategy not in STRATEGIES:
            raise ValueError(f"Unknown pool strategy: {strategy}")
        config = await self.get_pool_config()
        if enabled is not None:
            config.enabled = enabled
        if strategy is not None:
            config.strategy = strategy
        return self._save_pool(config)

    async def regenerate_pool_api_key(self) -> PoolConfig:
        config = await self.get_pool_config()
        config.api_key = generate_api_key("cpp")
        return self._save_pool(config)

    def _save_pool(self, config: PoolConfig) -> PoolConfig:
        data = self._read()
        data["pool"] = dataclasses.asdict(config)
        self._write(data)
        return config
