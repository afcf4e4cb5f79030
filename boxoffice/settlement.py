"""
Settlement: turn one confirmed payment into a ledger row, tickets and a
notification.

Invoked from the gateway webhook and from the manual verify endpoint,
possibly both at once and possibly many times for the same reference.
Everything up to the ledger write fails fast without side effects;
everything after is best effort and safe to run again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncContextManager, Callable, Dict, List, Optional, Sequence

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import (
    PartialSettlementFailure, PaymentNotSuccessful, ReservationNotFound,
    SettlementError,
)
from .fees import to_minor_units
from .gateway import GatewayTransaction, PaymentGateway
from .infra.timings import timeit
from .logger_config import logger
from .model import accounting
from .model.ledger import get_transaction, record_transaction
from .model.records import ResolvedReservation
from .model.reservations import (
    load_resolved, metadata_reservation_ids, reservation_ids_for,
    resolve_reservations,
)
from .model.settings import load_fee_defaults
from .model.tickets import (
    Issuance, existing_tickets, issue_tickets, ticket_view,
)
from .quote import quote_order
from .rates import FeeDefaults
from .helpers import to_iso
from .sinks import (
    AnalyticsSink, BundleTicket, NotificationSink, TicketBundle, TicketGroup,
    attribution_from,
)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class SettlementResult:
    reference: str
    transaction_created: bool = False
    # reservation ids whose tickets were created by this call
    issued: List[str] = field(default_factory=list)
    # reservation ids whose tickets already existed
    reused: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    bundle: Optional[TicketBundle] = None
    already_settled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> dict:
        return {
            "reference": self.reference,
            "ok": self.ok,
            "already_settled": self.already_settled,
            "transaction_created": self.transaction_created,
            "issued": list(self.issued),
            "reused": list(self.reused),
            "failures": dict(self.failures),
            "tickets": self.bundle.as_dict() if self.bundle else None,
        }


def build_bundle(
    reference: str,
    resolved: Sequence[ResolvedReservation],
    issuances: Sequence[Issuance],
    amount: str,
    currency: str,
    fallback_email: Optional[str] = None,
) -> Optional[TicketBundle]:
    if not resolved:
        return None
    by_id = {i.reservation_id: i for i in issuances}
    groups: Dict[str, List[BundleTicket]] = {}
    for r in resolved:
        iss = by_id.get(r.id)
        if iss is None:
            continue
        group = groups.setdefault(r.tier.name, [])
        for t in iss.tickets:
            group.append(BundleTicket(
                id=t.id, qr_payload=t.qr_payload,
                order_reference=t.order_reference,
            ))
    first = resolved[0]
    buyer = first.reservation
    return TicketBundle(
        reference=reference,
        event_title=first.event.title,
        event_starts_at=to_iso(first.event.starts_at),
        venue_name=first.event.venue_name,
        customer_name=buyer.buyer_name,
        customer_email=buyer.buyer_email or fallback_email,
        customer_phone=buyer.buyer_phone,
        currency=currency,
        amount=amount,
        groups=tuple(
            TicketGroup(tier_name=name, tickets=tuple(tickets))
            for name, tickets in groups.items()
        ),
    )


class Settlement:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker,
        gated: Gated,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        analytics: AnalyticsSink,
        gate,
        accounting_client=None,
        fee_fallback: Optional[FeeDefaults] = None,
    ):
        self.sessions = sessions
        self.gated = gated
        self.gateway = gateway
        self.notifier = notifier
        self.analytics = analytics
        self.gate = gate
        self.accounting_client = accounting_client
        self.fee_fallback = fee_fallback

    # ------------------------------------------------------------------
    async def settle(
        self,
        reference: str,
        reservation_ids: Optional[Sequence[str]] = None,
        transaction: Optional[GatewayTransaction] = None,
    ) -> SettlementResult:
        log = logger.bind(reference=reference)

        if not reservation_ids and await self._is_settled(reference):
            stored = await self._stored_result(reference)
            if stored is not None:
                log.info("already settled")
                return stored

        # 1. verify, no writes before this succeeds
        async with timeit("settle.verify"):
            txn = transaction
            if txn is None:
                txn = await self.gateway.verify_transaction(reference)
        if not txn.succeeded:
            log.warning(f"payment not successful: {txn.status}")
            raise PaymentNotSuccessful(reference, txn.status)

        # 2. resolve and price. The ledger row always covers everything the
        # payment paid for; explicit ids only narrow ticket issuance.
        wanted = reservation_ids_for(reference, reservation_ids, txn.metadata)
        paid_for = None if metadata_reservation_ids(txn.metadata) else wanted
        async with timeit("settle.resolve"):
            async with self.gated():
                async with self.sessions() as db:
                    defaults = await load_fee_defaults(db, self.fee_fallback)
                    resolved = await resolve_reservations(
                        db, reference, paid_for, txn.metadata
                    )
        if not any(r.id in wanted for r in resolved):
            raise ReservationNotFound(
                f"no reservation found for {', '.join(wanted)}"
            )
        order = quote_order(resolved, defaults)
        expected = to_minor_units(order.total.customer_total)
        if txn.amount != expected:
            log.warning(
                f"gateway amount {txn.amount} differs from computed total "
                f"{expected} ({order.currency})"
            )

        result = SettlementResult(reference=reference)
        ids = [r.id for r in resolved]

        # 3. ledger row, first writer wins
        async with timeit("settle.ledger"):
            async with self.sessions() as db:
                result.transaction_created = await record_transaction(
                    db, self.gated,
                    reference=reference,
                    gateway_txn=txn,
                    order=order,
                    reservation_ids=ids,
                )
            async with self.gated():
                async with self.sessions() as db:
                    stored = await get_transaction(db, reference)
        if stored is not None and list(stored.reservation_ids or []) != ids:
            log.warning(
                f"stored transaction covers {stored.reservation_ids}, "
                f"this settlement resolved {ids}"
            )
        await self._post_accounting(reference, stored)

        # 4. tickets, one reservation at a time
        issuances: List[Issuance] = []
        for r, q in zip(resolved, order.quotes):
            if r.id not in wanted:
                continue
            async with timeit("settle.issue"):
                async with self.sessions() as db:
                    try:
                        iss = await issue_tickets(
                            db, self.gated, r, reference, q.addon_lines
                        )
                    except SettlementError as e:
                        log.error(f"reservation {r.id} failed: {e.message}")
                        result.failures[r.id] = e.message
                        continue
                    except SQLAlchemyError as e:
                        log.exception(f"reservation {r.id} failed in store")
                        result.failures[r.id] = str(e.__class__.__name__)
                        continue
            issuances.append(iss)
            (result.issued if iss.newly_issued else result.reused).append(r.id)

        amount = str(stored.amount) if stored is not None else str(
            order.total.customer_total)
        currency = stored.currency if stored is not None else order.currency
        result.bundle = build_bundle(
            reference, resolved, issuances, amount, currency,
            fallback_email=txn.customer_email,
        )

        # 5. + 6. notifications and attribution, best effort
        if result.issued and result.bundle is not None:
            await self._notify(reference, result.bundle)
        if result.transaction_created:
            await self._track(reference, attribution_from(txn.metadata))

        if result.failures:
            raise PartialSettlementFailure(result, result.failures)

        # a settlement limited to some of the payment's reservations leaves
        # the reference open for the rest
        if set(wanted) >= set(ids):
            await self._mark_settled(reference)
        log.info(
            f"settled: issued={len(result.issued)} reused={len(result.reused)}"
        )
        return result

    # ------------------------------------------------------------------
    async def _is_settled(self, reference: str) -> bool:
        try:
            return await self.gate.is_settled(reference)
        except (RedisError, SQLAlchemyError) as e:
            logger.warning(f"settlement gate unavailable: {e}")
            return False

    async def _mark_settled(self, reference: str) -> None:
        try:
            await self.gate.mark_settled(reference)
        except (RedisError, SQLAlchemyError) as e:
            logger.warning(f"could not mark {reference} settled: {e}")

    async def _stored_result(self, reference: str) -> Optional[SettlementResult]:
        async with self.gated():
            async with self.sessions() as db:
                stored = await get_transaction(db, reference)
                if stored is None:
                    return None
                resolved = await load_resolved(
                    db, list(stored.reservation_ids or [])
                )
                issuances = []
                for r in resolved:
                    found = await existing_tickets(db, r.id)
                    issuances.append(
                        Issuance(r.id, False, tuple(map(ticket_view, found)))
                    )
        return SettlementResult(
            reference=reference,
            reused=[i.reservation_id for i in issuances],
            bundle=build_bundle(
                reference, resolved, issuances,
                str(stored.amount), stored.currency,
                fallback_email=stored.customer_email,
            ),
            already_settled=True,
        )

    async def _post_accounting(self, reference: str, stored) -> None:
        if self.accounting_client is None or stored is None:
            return
        legs = accounting.settlement_legs(stored)
        try:
            async with timeit("settle.accounting"):
                n = await accounting.post_settlement(
                    self.accounting_client, reference, legs
                )
        except Exception:
            # mirrored on the next settlement attempt for this reference
            logger.exception(f"accounting post failed for {reference}")
            return
        if n:
            logger.info(f"posted {n} ledger leg(s) for {reference}")

    async def _notify(self, reference: str, bundle: TicketBundle) -> None:
        try:
            async with timeit("settle.notify"):
                await self.notifier.send(bundle)
        except Exception:
            logger.exception(f"ticket notification failed for {reference}")

    async def _track(self, reference: str, attribution: dict) -> None:
        try:
            await self.analytics.track(reference, attribution)
        except Exception:
            logger.exception(f"analytics forwarding failed for {reference}")
