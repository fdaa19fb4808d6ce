"""Per-tenant status records (last model decision and friends)."""

from typing import Any, Optional

from modelgate.schemas import PersistResult
from modelgate.storage import StoreBase


STORAGE_KEY = "tenantStatus"


class TenantStatusStore(StoreBase):
    """Durable status record per tenant, stored under ``tenantStatus``."""

    area = "tenant"

    async def get_all(self) -> dict[str, dict]:
        return await self._read(STORAGE_KEY, {})

    async def get(self, tenant_key: str) -> Optional[dict]:
        status = (await self.get_all()).get(str(tenant_key))
        return status if isinstance(status, dict) else None

    async def update(self, tenant_key: str, patch: dict[str, Any], now: Optional[int] = None) -> PersistResult:
        """Merge ``patch`` into the tenant's record."""
        if not tenant_key:
            return PersistResult.skipped("missing tenant key")
        ts = self._now(now)
        async with self._lock:
            all_status = await self._read(STORAGE_KEY, {})
            current = all_status.get(str(tenant_key))
            current = dict(current) if isinstance(current, dict) else {}
            current.update(patch)
            current["updated_at"] = ts
            all_status[str(tenant_key)] = current
            return await self._write({STORAGE_KEY: all_status})

    async def set_model_decision(self, tenant_key: str, decision: dict[str, Any], now: Optional[int] = None) -> PersistResult:
        ts = self._now(now)
        return await self.update(tenant_key, {"model_decision": {**decision, "updated_at": ts}}, now=ts)

    async def get_model_decision(self, tenant_key: str) -> Optional[dict]:
        status = await self.get(tenant_key)
        return status.get("model_decision") if status else None

    async def remove(self, tenant_key: str) -> PersistResult:
        async with self._lock:
            all_status = await self._read(STORAGE_KEY, {})
            if all_status.pop(str(tenant_key), None) is None:
                return PersistResult.skipped("unknown tenant")
            return await self._write({STORAGE_KEY: all_status})
