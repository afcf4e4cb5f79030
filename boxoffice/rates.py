"""
Effective fee rate resolution.

Every stored rate goes through `normalize_rate` before use, whatever path
reads it (settlement, checkout, settings, reporting).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .fees import FeeRates, Number, to_decimal, HUNDRED

DEFAULT_PLATFORM_FEE_PERCENT = Decimal("0.04")
DEFAULT_PROCESSOR_FEE_PERCENT = Decimal("0.0198")

# processor default before the gateway changed its pricing
LEGACY_PROCESSOR_FEE_PERCENT = Decimal("0.0195")


def normalize_rate(value: Optional[Number]) -> Optional[Decimal]:
    """
    Interpret a stored rate.

    Values below 1 are fractions (0.04 = 4%), values of 1 or more are whole
    percentages (4 = 4%). Legacy encoding: a genuine rate of 100% or more
    cannot be expressed as a fraction here.
    """
    if value is None:
        return None
    rate = to_decimal(value)
    if rate < 0:
        raise ValueError(f"fee rate must not be negative: {value!r}")
    if rate >= 1:
        return rate / HUNDRED
    return rate


def normalize_processor_rate(value: Optional[Number]) -> Optional[Decimal]:
    rate = normalize_rate(value)
    if rate is not None and rate == LEGACY_PROCESSOR_FEE_PERCENT:
        return DEFAULT_PROCESSOR_FEE_PERCENT
    return rate


@dataclass(frozen=True)
class FeeDefaults:
    """Platform-wide defaults; `None` falls through to the built-ins."""
    platform_fee_percent: Optional[Decimal] = None
    processor_fee_percent: Optional[Decimal] = None

    @classmethod
    def from_env(cls) -> "FeeDefaults":
        platform = os.getenv("PLATFORM_FEE_PERCENT")
        processor = os.getenv("PROCESSOR_FEE_PERCENT")
        return cls(
            platform_fee_percent=normalize_rate(platform) if platform else None,
            processor_fee_percent=(
                normalize_processor_rate(processor) if processor else None
            ),
        )


def resolve_rates(
    defaults: Optional[FeeDefaults],
    event_platform_fee: Optional[Number] = None,
    organizer_platform_fee: Optional[Number] = None,
) -> FeeRates:
    """
    Platform rate: event override, then organizer override, then the global
    default, then the built-in. Zero is a real override, only None is
    "not set". The processor rate is global only.
    """
    defaults = defaults or FeeDefaults()

    platform = normalize_rate(event_platform_fee)
    if platform is None:
        platform = normalize_rate(organizer_platform_fee)
    if platform is None:
        platform = normalize_rate(defaults.platform_fee_percent)
    if platform is None:
        platform = DEFAULT_PLATFORM_FEE_PERCENT

    processor = normalize_processor_rate(defaults.processor_fee_percent)
    if processor is None:
        processor = DEFAULT_PROCESSOR_FEE_PERCENT

    return FeeRates(
        platform_fee_percent=platform,
        processor_fee_percent=processor,
    )
