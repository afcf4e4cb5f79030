# model/accounting/_tigerbeetle.py
"""
TigerBeetle accounting backend.

One ledger per currency (ISO 4217 numeric code). Account and transfer ids
are derived from names so a replayed settlement produces the same transfers
and TigerBeetle answers EXISTS instead of posting twice.
"""
from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List

import tigerbeetle as tb

from ...logger_config import logger
from ._legs import Leg, GATEWAY, CLEARING, PLATFORM, PROCESSOR

CURRENCY_LEDGERS = {
    "NGN": 566,
    "GHS": 936,
    "KES": 404,
    "ZAR": 710,
    "USD": 840,
    "EUR": 978,
    "GBP": 826,
}

ACCOUNT_CODES = {
    GATEWAY: 10,
    CLEARING: 20,
    PLATFORM: 30,
    PROCESSOR: 40,
}
ORGANIZER_CODE = 50
TRANSFER_CODE = 1

BASE_ACCOUNTS = (GATEWAY, CLEARING, PLATFORM, PROCESSOR)


def ledger_for(currency: str) -> int:
    try:
        return CURRENCY_LEDGERS[currency.upper()]
    except KeyError:
        raise ValueError(f"no ledger configured for currency {currency!r}")


def _id128(key: str) -> int:
    return int.from_bytes(hashlib.sha256(key.encode()).digest()[:16], "big")


def account_id(currency: str, name: str) -> int:
    return _id128(f"acct:{currency.upper()}:{name}")


def transfer_id(reference: str, leg: str) -> int:
    return _id128(f"xfer:{reference}:{leg}")


def _account(currency: str, name: str) -> tb.Account:
    code = ACCOUNT_CODES.get(name, ORGANIZER_CODE)
    flags = 0
    if name != GATEWAY:
        # money only leaves an account after it arrived there
        flags = tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS
    return tb.Account(
        id=account_id(currency, name),
        ledger=ledger_for(currency),
        code=code,
        flags=flags,
    )


async def _ensure_accounts(
    client: tb.ClientAsync, currency: str, names: Iterable[str]
) -> bool:
    accounts = [_account(currency, n) for n in dict.fromkeys(names)]
    errors = await client.create_accounts(accounts)
    real = [
        e for e in errors if e.result != tb.CreateAccountResult.EXISTS
    ]
    if real:
        logger.error(f"TigerBeetle account errors: {real}")
        return False
    return True


async def create_accounts(
    client: tb.ClientAsync, currencies: Iterable[str] = ("NGN",)
) -> bool:
    ok = True
    for currency in currencies:
        ok = await _ensure_accounts(client, currency, BASE_ACCOUNTS) and ok
    if ok:
        logger.info("TigerBeetle accounts existing / created")
    return ok


def build_transfers(reference: str, legs: List[Leg]) -> List[tb.Transfer]:
    transfers = []
    for i, leg in enumerate(legs):
        last = i == len(legs) - 1
        transfers.append(tb.Transfer(
            id=transfer_id(reference, leg.name),
            debit_account_id=account_id(leg.currency, leg.debit),
            credit_account_id=account_id(leg.currency, leg.credit),
            amount=leg.amount,
            ledger=ledger_for(leg.currency),
            code=TRANSFER_CODE,
            # chain the legs: all post or none do
            flags=0 if last else tb.TransferFlags.LINKED,
        ))
    return transfers


async def post_settlement(
    client: tb.ClientAsync, reference: str, legs: List[Leg]
) -> int:
    if not legs:
        return 0
    currency = legs[0].currency
    names = [n for leg in legs for n in (leg.debit, leg.credit)]
    if not await _ensure_accounts(client, currency, names):
        raise RuntimeError(f"cannot create accounts for {reference}")

    transfers = build_transfers(reference, legs)
    errors = await client.create_transfers(transfers)
    failed = {}
    for e in errors:
        if e.result == tb.CreateTransferResult.EXISTS:
            continue
        # the rest of a linked chain reports LINKED_EVENT_FAILED
        failed[e.index] = e.result
    if failed:
        raise RuntimeError(
            f"TigerBeetle rejected transfers for {reference}: {failed}"
        )
    exists = sum(
        1 for e in errors if e.result == tb.CreateTransferResult.EXISTS
    )
    return len(transfers) - exists


async def balances(client: tb.ClientAsync, currency: str) -> Dict[str, int]:
    names = list(BASE_ACCOUNTS)
    accounts = await client.lookup_accounts(
        [account_id(currency, n) for n in names]
    )
    by_id = {a.id: a for a in accounts}
    out = {}
    for n in names:
        a = by_id.get(account_id(currency, n))
        if a is None:
            continue
        out[n] = int(a.credits_posted) - int(a.debits_posted)
    return out
