# model/settings.py
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..logger_config import logger
from ..rates import FeeDefaults, normalize_rate, normalize_processor_rate
from .db import SystemSetting

FEES_KEY = "fees"


async def load_fee_defaults(
    db: AsyncSession, fallback: Optional[FeeDefaults] = None
) -> FeeDefaults:
    fallback = fallback or FeeDefaults()
    row = await db.get(SystemSetting, FEES_KEY)
    if row is None or not isinstance(row.value, dict):
        return fallback
    value = row.value
    try:
        platform = normalize_rate(value.get("platform_fee_percent"))
        processor = normalize_processor_rate(value.get("processor_fee_percent"))
    except (ArithmeticError, ValueError) as e:
        logger.error(f"ignoring malformed fee settings {value!r}: {e}")
        return fallback
    return FeeDefaults(
        platform_fee_percent=(
            platform if platform is not None else fallback.platform_fee_percent
        ),
        processor_fee_percent=(
            processor if processor is not None
            else fallback.processor_fee_percent
        ),
    )


async def save_fee_defaults(db: AsyncSession, defaults: FeeDefaults) -> None:
    """Upsert the global fee row. Caller owns the transaction."""
    value = {
        "platform_fee_percent": (
            str(defaults.platform_fee_percent)
            if defaults.platform_fee_percent is not None else None
        ),
        "processor_fee_percent": (
            str(defaults.processor_fee_percent)
            if defaults.processor_fee_percent is not None else None
        ),
    }
    row = await db.get(SystemSetting, FEES_KEY)
    if row is None:
        db.add(SystemSetting(key=FEES_KEY, value=value, updated_at=now_ts()))
    else:
        row.value = value
        row.updated_at = now_ts()
