"""In-memory implementation of KeyValueStore for testing."""

from __future__ import annotations

import json
from typing import Any, Callable, List, Optional

from microsettle.domain.errors import StoreUnavailable
from microsettle.infrastructure.storage import KeyValueStore


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory implementation of KeyValueStore for fast testing.

    Registered scripts are executed by name with Python equivalents of the
    Lua sources in ``microsettle.infrastructure.scripts``.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._ttls: dict[str, Optional[int]] = {}
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._sets: dict[str, set[str]] = {}
        self._script_sources: dict[str, str] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory store switched off")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self._data.get(key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        self._check()
        return [self._data.get(key) for key in keys]

    def _ordered(self, key: str) -> list[tuple[str, float]]:
        # Redis orders ties lexicographically by member
        zset = self._sorted_sets.get(key, {})
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    @staticmethod
    def _slice(members: list[str], start: int, end: int) -> list[str]:
        # Redis ranges are inclusive on both ends; -1 is the last member
        return members[start:None if end == -1 else end + 1]

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        return self._slice([m for m, _ in self._ordered(key)], start, end)

    async def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        return self._slice([m for m, _ in reversed(self._ordered(key))], start, end)

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: Optional[int] = None
    ) -> list[str]:
        self._check()
        members = [m for m, s in self._ordered(key) if min_score <= s <= max_score]
        return members if limit is None else members[:limit]

    async def zrem(self, key: str, member: str) -> int:
        self._check()
        zset = self._sorted_sets.get(key, {})
        return 1 if zset.pop(member, None) is not None else 0

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self._sorted_sets.get(key, {}))

    def zscore(self, key: str, member: str) -> Optional[float]:
        return self._sorted_sets.get(key, {}).get(member)

    def ttl(self, key: str) -> Optional[int]:
        return self._ttls.get(key)

    async def register_script(self, name: str, script: str) -> str:
        """Register a script (return mock SHA1)."""
        self._check()
        if name not in self._handlers():
            raise NotImplementedError(f"Script '{name}' has no in-memory equivalent")
        self._script_sources[name] = script
        return f"sha1_{name}"

    async def run_script(self, name: str, keys: List[str], args: List[str]) -> Any:
        """Execute script by name."""
        self._check()
        if name not in self._script_sources:
            raise ValueError(f"Script '{name}' not registered")
        return self._handlers()[name](keys, args)

    def _handlers(self) -> dict[str, Callable[[List[str], List[str]], list[Any]]]:
        return {
            "record_authorization_verified": self._record_authorization_verified,
            "transition_authorization": self._transition_authorization,
            "store_voucher": self._store_voucher,
            "finalize_settlement": self._finalize_settlement,
            "delete_expired_voucher": self._delete_expired_voucher,
            "save_settlement_intent": self._save_settlement_intent,
            "clear_settlement_intent": self._clear_settlement_intent,
            "store_nullifier": self._store_nullifier,
            "delete_expired_nullifier": self._delete_expired_nullifier,
        }

    def _record_authorization_verified(
        self, keys: List[str], args: List[str]
    ) -> list[Any]:
        current_raw = self._data.get(keys[0])
        if current_raw is not None:
            state = json.loads(current_raw)["state"]
            if state not in ("verified", "settlement_failed"):
                return [0, current_raw]
        self._data[keys[0]] = args[0]
        self._ttls[keys[0]] = int(args[1])
        return [1, args[0]]

    def _transition_authorization(self, keys: List[str], args: List[str]) -> list[Any]:
        current_raw = self._data.get(keys[0])
        if current_raw is None:
            return [2, ""]
        if json.loads(current_raw)["state"] not in args[1].split(","):
            return [0, current_raw]
        self._data[keys[0]] = args[0]
        if len(keys) > 1:
            self._data[keys[1]] = keys[0]
            self._ttls[keys[1]] = int(args[2])
        return [1, args[0]]

    def _store_voucher(self, keys: List[str], args: List[str]) -> list[Any]:
        nonce_key, voucher_key, unsettled_key, expiry_key = keys
        existing = self._data.get(nonce_key)
        if existing is not None:
            return [0, existing]
        self._data[nonce_key] = args[1]
        self._data[voucher_key] = args[0]
        self._sorted_sets.setdefault(unsettled_key, {})[args[1]] = float(args[2])
        self._sorted_sets.setdefault(expiry_key, {})[args[1]] = float(args[3])
        return [1, args[0]]

    def _finalize_settlement(self, keys: List[str], args: List[str]) -> list[Any]:
        settlement_key, payee_settlements_key, unsettled_key, expiry_key = keys[:4]
        tx_hash = args[1]
        if settlement_key in self._data:
            return [0, tx_hash]

        voucher_keys = keys[4:]
        voucher_ids = args[3:]
        vouchers = []
        for voucher_key, voucher_id in zip(voucher_keys, voucher_ids):
            raw = self._data.get(voucher_key)
            if raw is None:
                return [2, voucher_id]
            voucher = json.loads(raw)
            if voucher["settled"] and voucher.get("settlement_tx_hash") != tx_hash:
                return [3, voucher_id]
            vouchers.append(voucher)

        for voucher_key, voucher_id, voucher in zip(voucher_keys, voucher_ids, vouchers):
            voucher["settled"] = True
            voucher["settlement_tx_hash"] = tx_hash
            self._data[voucher_key] = json.dumps(voucher)
            self._sorted_sets.get(unsettled_key, {}).pop(voucher_id, None)
            self._sorted_sets.get(expiry_key, {}).pop(voucher_id, None)

        self._data[settlement_key] = args[0]
        self._sorted_sets.setdefault(payee_settlements_key, {})[tx_hash] = float(args[2])
        return [1, tx_hash]

    def _delete_expired_voucher(self, keys: List[str], args: List[str]) -> list[Any]:
        voucher_key, nonce_key, unsettled_key, expiry_key, pinned_key = keys
        voucher_id, now = args[0], float(args[1])
        raw = self._data.get(voucher_key)
        if raw is None:
            self._sorted_sets.get(expiry_key, {}).pop(voucher_id, None)
            return [2, ""]
        voucher = json.loads(raw)
        if voucher["settled"] or float(voucher["valid_until"]) > now:
            return [0, raw]
        if voucher_id in self._sets.get(pinned_key, set()):
            return [3, voucher_id]
        self._data.pop(voucher_key, None)
        self._data.pop(nonce_key, None)
        self._sorted_sets.get(unsettled_key, {}).pop(voucher_id, None)
        self._sorted_sets.get(expiry_key, {}).pop(voucher_id, None)
        return [1, voucher_id]

    def _save_settlement_intent(self, keys: List[str], args: List[str]) -> list[Any]:
        intent_key, pending_key, pinned_key = keys
        current_raw = self._data.get(intent_key)
        if current_raw is not None:
            return [0, current_raw]
        self._data[intent_key] = args[0]
        self._sorted_sets.setdefault(pending_key, {})[intent_key] = float(args[1])
        self._sets.setdefault(pinned_key, set()).update(json.loads(args[0])["voucher_ids"])
        return [1, args[0]]

    def _clear_settlement_intent(self, keys: List[str], args: List[str]) -> list[Any]:
        intent_key, pending_key, pinned_key = keys
        current_raw = self._data.get(intent_key)
        if current_raw is None:
            self._sorted_sets.get(pending_key, {}).pop(intent_key, None)
            return [2, ""]
        intent = json.loads(current_raw)
        if intent["nonce"] != args[0]:
            return [0, current_raw]
        self._sets.get(pinned_key, set()).difference_update(intent["voucher_ids"])
        del self._data[intent_key]
        self._sorted_sets.get(pending_key, {}).pop(intent_key, None)
        return [1, ""]

    def _store_nullifier(self, keys: List[str], args: List[str]) -> list[Any]:
        key, scope_key, expiry_key = keys
        current_raw = self._data.get(key)
        if current_raw is not None:
            expires = self.zscore(expiry_key, key)
            if expires is None or expires > float(args[1]):
                return [0, current_raw]
        self._data[key] = args[0]
        self._sorted_sets.setdefault(scope_key, {})[args[4]] = float(args[2])
        self._sorted_sets.setdefault(expiry_key, {})[key] = float(args[3])
        return [1, args[0]]

    def _delete_expired_nullifier(self, keys: List[str], args: List[str]) -> list[Any]:
        key, scope_key, expiry_key = keys
        expires = self.zscore(expiry_key, key)
        if expires is not None and expires > float(args[0]):
            return [0, ""]
        self._data.pop(key, None)
        self._sorted_sets.get(scope_key, {}).pop(args[1], None)
        self._sorted_sets.get(expiry_key, {}).pop(key, None)
        return [1, args[1]]
