import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("GATE_BACKEND", "pg").lower()  # 'redis' | 'pg'

if BACKEND == "redis":
    from ._redis import SettlementGate as _SettlementGate
else:
    from ._postgres import SettlementGate as _SettlementGate


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(*, sessions: Optional[async_sessionmaker] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 7 * 24 * 3600,
             gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "SettlementGate(redis) requires r=redis.Redis"
            )
        return _SettlementGate(r=r, ttl_seconds=ttl_seconds)
    if sessions is None:
        raise RuntimeError(
            "SettlementGate(pg) requires sessions=async_sessionmaker"
        )
    if gated is None:
        raise RuntimeError("SettlementGate(pg) requires gated=Gated")
    return _SettlementGate(sessions=sessions, gated=gated)


SettlementGate = _SettlementGate
__all__ = ["SettlementGate", "new_gate", "BACKEND"]
