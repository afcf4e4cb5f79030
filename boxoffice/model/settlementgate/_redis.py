from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_settled(reference: str) -> str: return f"settled:{reference}"


class SettlementGate:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def is_settled(self, reference: str) -> bool:
        return bool(await self.r.exists(k_settled(reference)))

    async def mark_settled(self, reference: str) -> bool:
        # NX: only the first completed settlement sets the marker
        ok = await self.r.set(k_settled(reference), "1", nx=True, ex=self.ttl)
        return bool(ok)
