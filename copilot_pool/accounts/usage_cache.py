"""File-backed cache of the last quota snapshot fetched per account."""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class CachedUsage:
    usage: dict
    fetched_at: str


class UsageCache:
    """JSON file of ``{account_id: {"usage": ..., "fetched_at": ...}}``.

    Unreadable or missing files read as empty; the cache is advisory and
    only feeds the quota selection strategy.
    """

    def __init__(self, path: str):
        self._path = path

    def _read(self) -> dict:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self._path)), exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    @staticmethod
    def _parse(entry) -> CachedUsage | None:
        if not isinstance(entry, dict) or not isinstance(entry.get("usage"), dict):
            return None
        return CachedUsage(usage=entry["usage"], fetched_at=entry.get("fetched_at", ""))

    async def get(self, account_id: str) -> CachedUsage | None:
        return self._parse(self._read().get(account_id))

    async def set(self, account_id: str, usage: dict) -> None:
        data = self._read()
        data[account_id] = {
            "usage": usage,
            "fetched_at": datetime.now(timezone.utc).isoformat(),
        }
        self._write(data)

    async def all(self) -> dict[str, CachedUsage]:
        result = {}
        for account_id, entry in self._read().items():
            cached = self._parse(entry)
            if cached is not None:
                result[account_id] = cached
        return result
