"""
Transaction Service

Creates, retrieves and transitions transactions. This is the only module that
writes the transactions table.

State machine:
- pending    -> processing, succeeded, failed, refunded
- processing -> succeeded, failed
- succeeded, failed, refunded are terminal

Every write is a compare-and-set (_compare_and_set): the UPDATE is guarded
on the status the caller read and, when metadata is rewritten, on the row
version. A lost race is detected by rowcount and the caller re-reads. That
guard is the whole concurrency story: callbacks, the sweeper and admin
actions may run concurrently and exactly one of them wins a transition.

Events owed to collaborators are appended to pending_events in the same
UPDATE as the transition, published after commit, then removed one by one.
A failed publish leaves the rest owed for the sweeper to deliver again;
an owed event is never overwritten by a later transition.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import TransactionModel
from ..exceptions import (
    AmountMismatchError,
    DuplicateOrderRefError,
    EventDeliveryError,
    ExtensionLimitError,
    InvalidAmountError,
    RefundExceedsBalanceError,
    RefundNotAllowedError,
    StateConflictError,
    TransactionNotFoundError,
    UnknownOrderRefError,
)
from ..models.transactions import (
    CallbackOutcome,
    PaymentEvent,
    PaymentMethod,
    Provenance,
    TERMINAL_STATUSES,
    TRANSITIONS,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .clock import SystemClock
from .event_service import EventBus

logger = logging.getLogger(__name__)

# Bound on re-read/re-try loops after losing a compare-and-set
MAX_CAS_ATTEMPTS = 3

# Refund records count against the refundable balance in these states
REFUND_BALANCE_STATUSES = (TransactionStatus.PENDING, TransactionStatus.REFUNDED)

EVENT_FOR_OUTCOME = {
    TransactionStatus.SUCCEEDED: "payment.success",
    TransactionStatus.FAILED: "payment.failed",
}


def _to_transaction(row: TransactionModel) -> Transaction:
    return Transaction(
        id=row.id,
        order_ref=row.order_ref,
        gateway=row.gateway,
        user_ref=row.user_ref,
        booking_ref=row.booking_ref,
        amount=row.amount,
        method=row.method,
        type=row.type,
        status=row.status,
        external_transaction_no=row.external_transaction_no,
        related_transaction_id=row.related_transaction_id,
        metadata=dict(row.extra or {}),
        expires_at=row.expires_at,
        pending_events=list(row.pending_events or []),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _values(statuses: Iterable[TransactionStatus]) -> List[str]:
    return [status.value for status in statuses]


def _owe(row: TransactionModel, event_type: str) -> List[str]:
    return list(row.pending_events or []) + [event_type]


class TransactionStore:
    """
    Transaction persistence and guarded state machine.

    Each public method runs in its own session and commits before any event
    is published.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_bus: EventBus,
        clock=None,
        payment_timeout_minutes: int = 15,
        max_extensions: int = 2
    ):
        self._session_factory = session_factory
        self._event_bus = event_bus
        self._clock = clock or SystemClock()
        self._payment_timeout = timedelta(minutes=payment_timeout_minutes)
        self._max_extensions = max_extensions

    @property
    def payment_timeout_minutes(self) -> int:
        return int(self._payment_timeout.total_seconds() // 60)

    # ========================================================================
    # Compare-and-set
    # ========================================================================

    async def _compare_and_set(
        self,
        session: AsyncSession,
        transaction_id: str,
        expected_statuses: Iterable[TransactionStatus],
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> bool:
        """
        Apply values only if the row is still in one of expected_statuses
        (and at expected_version when given). Bumps version.

        Returns:
            True if exactly one row was updated
        """
        stmt = update(TransactionModel).where(
            TransactionModel.id == transaction_id,
            TransactionModel.status.in_(_values(expected_statuses))
        )
        if expected_version is not None:
            stmt = stmt.where(TransactionModel.version == expected_version)

        assignments = {getattr(TransactionModel, key): value for key, value in values.items()}
        assignments[TransactionModel.version] = TransactionModel.version + 1
        assignments[TransactionModel.updated_at] = self._clock.now()

        result = await session.execute(
            stmt.values(assignments).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _fetch(self, session: AsyncSession, transaction_id: str) -> Optional[TransactionModel]:
        result = await session.execute(
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _fetch_by_order_ref(self, session: AsyncSession, order_ref: str) -> Optional[TransactionModel]:
        result = await session.execute(
            select(TransactionModel)
            .where(TransactionModel.order_ref == order_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, session: AsyncSession, transaction_id: str) -> TransactionModel:
        row = await self._fetch(session, transaction_id)
        if row is None:
            raise TransactionNotFoundError(
                f"Transaction not found: {transaction_id}",
                details={"transaction_id": transaction_id}
            )
        return row

    # ========================================================================
    # Creation and retrieval
    # ========================================================================

    async def create(
        self,
        order_ref: str,
        amount: int,
        method: PaymentMethod,
        user_ref: str,
        gateway: str,
        type: TransactionType = TransactionType.PAYMENT,
        booking_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        related_transaction_id: Optional[str] = None
    ) -> Transaction:
        """
        Create a pending transaction.

        Args:
            order_ref: Gateway correlation reference, globally unique
            amount: VND, positive
            method: Payment instrument
            user_ref: Paying user id
            gateway: "vnpay" or "payos"
            type: Transaction type (payment unless recording a refund/adjustment)
            booking_ref: Booking id, if the payment is for one
            metadata: Initial metadata
            related_transaction_id: Parent transaction for refund records

        Returns:
            Created Transaction

        Raises:
            InvalidAmountError: amount is not a positive integer
            DuplicateOrderRefError: order_ref already exists
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(
                f"Amount must be a positive integer, got {amount!r}",
                details={"amount": amount}
            )

        transaction_id = f"txn_{uuid.uuid4().hex[:16]}"
        now = self._clock.now()
        row = TransactionModel(
            id=transaction_id,
            order_ref=order_ref,
            gateway=gateway,
            user_ref=user_ref,
            booking_ref=booking_ref,
            amount=amount,
            method=PaymentMethod(method).value,
            type=TransactionType(type).value,
            status=TransactionStatus.PENDING.value,
            related_transaction_id=related_transaction_id,
            extra=dict(metadata or {}),
            expires_at=now + self._payment_timeout,
            version=0,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                existing = await self._fetch_by_order_ref(session, order_ref)
                if existing is not None:
                    raise DuplicateOrderRefError(
                        f"Order reference already exists: {order_ref}",
                        details={"order_ref": order_ref, "transaction_id": existing.id}
                    ) from e
                raise

        logger.info(
            f"Created transaction: {transaction_id}, order_ref={order_ref}, "
            f"gateway={gateway}, type={row.type}, amount={amount}"
        )
        return _to_transaction(row)

    async def get(self, transaction_id: str) -> Transaction:
        """
        Retrieve transaction by ID.

        Raises:
            TransactionNotFoundError: If no such transaction exists
        """
        async with self._session_factory() as session:
            return _to_transaction(await self._require(session, transaction_id))

    async def get_by_order_ref(self, order_ref: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            row = await self._fetch_by_order_ref(session, order_ref)
            return _to_transaction(row) if row else None

    async def list_refunds(self, parent_id: str) -> List[Transaction]:
        """Refund records linked to a payment, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel)
                .where(TransactionModel.related_transaction_id == parent_id)
                .order_by(TransactionModel.created_at.asc())
            )
            return [_to_transaction(row) for row in result.scalars().all()]

    async def get_by_booking_ref(self, booking_ref: str) -> Optional[Transaction]:
        """Latest payment started for a booking, or None."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel)
                .where(
                    TransactionModel.booking_ref == booking_ref,
                    TransactionModel.type == TransactionType.PAYMENT.value,
                )
                .order_by(TransactionModel.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_transaction(row) if row else None

    async def list_payments(
        self,
        user_ref: str,
        status: Optional[TransactionStatus] = None,
        limit: int = 10,
        offset: int = 0
    ) -> Tuple[List[Transaction], int]:
        """
        One page of a user's payments, newest first, and the total count
        matching the filter. Refund records are not listed.
        """
        conditions = [
            TransactionModel.user_ref == user_ref,
            TransactionModel.type == TransactionType.PAYMENT.value,
        ]
        if status is not None:
            conditions.append(TransactionModel.status == TransactionStatus(status).value)

        async with self._session_factory() as session:
            total = await session.execute(select(func.count(TransactionModel.id)).where(*conditions))
            result = await session.execute(
                select(TransactionModel)
                .where(*conditions)
                .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [_to_transaction(row) for row in result.scalars().all()], int(total.scalar_one())

    async def refunded_total(self, parent_id: str) -> int:
        """Sum of linked refunds that are pending or refunded."""
        async with self._session_factory() as session:
            return await self._refunded_total(session, parent_id)

    async def _refunded_total(self, session: AsyncSession, parent_id: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(TransactionModel.amount), 0)).where(
                TransactionModel.related_transaction_id == parent_id,
                TransactionModel.status.in_(_values(REFUND_BALANCE_STATUSES)),
            )
        )
        return int(result.scalar_one())

    async def remaining_seconds(self, transaction_id: str) -> int:
        """Seconds until a pending payment times out; 0 once it is no longer pending."""
        txn = await self.get(transaction_id)
        if txn.status != TransactionStatus.PENDING:
            return 0
        return max(0, int((txn.expires_at - self._clock.now()).total_seconds()))

    async def find_expired(self, now: datetime, limit: int = 500) -> List[str]:
        """Ids of pending payments whose deadline has passed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel.id)
                .where(
                    TransactionModel.status == TransactionStatus.PENDING.value,
                    TransactionModel.type == TransactionType.PAYMENT.value,
                    TransactionModel.expires_at <= now,
                )
                .order_by(TransactionModel.expires_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_undelivered_events(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        """Transactions whose owed event was not acknowledged by older_than."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel)
                .where(
                    TransactionModel.pending_events.is_not(None),
                    TransactionModel.updated_at <= older_than,
                )
                .order_by(TransactionModel.updated_at.asc())
                .limit(limit)
            )
            return [_to_transaction(row) for row in result.scalars().all()]

    async def update_metadata(self, transaction_id: str, updates: Dict[str, Any]) -> Transaction:
        """Merge keys into metadata without touching status."""
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._require(session, transaction_id)
                metadata = dict(row.extra or {})
                metadata.update(updates)
                if await self._compare_and_set(
                    session,
                    transaction_id,
                    [TransactionStatus(row.status)],
                    {"extra": metadata},
                    expected_version=row.version,
                ):
                    await session.commit()
                    return _to_transaction(await self._fetch(session, transaction_id))
                await session.rollback()

        raise StateConflictError(
            f"Could not update metadata of {transaction_id}: concurrent update",
            details={"transaction_id": transaction_id}
        )

    # ========================================================================
    # Events
    # ========================================================================

    def _build_event(self, txn: Transaction, event_type: str) -> PaymentEvent:
        reason = None
        extensions = None
        if event_type == "payment.expired":
            reason = txn.metadata.get("expired_reason")
        elif event_type == "payment.cancelled":
            reason = txn.metadata.get("cancel_reason")
        elif event_type == "payment.failed":
            reason = txn.metadata.get("failure_reason")
        elif event_type == "payment.extended":
            extensions = txn.metadata.get("extension_count")

        return PaymentEvent(
            event_type=event_type,
            transaction_id=txn.id,
            booking_id=txn.booking_ref,
            user_id=txn.user_ref,
            amount=txn.amount,
            method=txn.method,
            timestamp=self._clock.now(),
            reason=reason,
            extensions=extensions,
        )

    async def publish_pending_event(self, txn: Transaction) -> bool:
        """
        Publish the events owed on txn, oldest first, removing each one once
        every subscriber accepted it.

        A subscriber failure is not raised to the caller: the transition is
        already committed, so the failure is logged and the event and every
        later one stay owed for the sweeper.

        Returns:
            True if nothing is left owed
        """
        return not await self._publish_owed(txn)

    async def _publish_owed(self, txn: Transaction) -> List[str]:
        """Publish in order, stop at the first failure. Returns what is still owed."""
        owed = list(txn.pending_events)
        while owed:
            event_type = owed[0]
            try:
                await self._event_bus.publish(self._build_event(txn, event_type))
            except EventDeliveryError as e:
                logger.warning(
                    f"Event {event_type} for {txn.id} not delivered, "
                    f"will retry: {e.message}"
                )
                break
            await self.mark_event_delivered(txn.id, event_type)
            owed.pop(0)
        return owed

    async def _deliver(self, txn: Transaction) -> Transaction:
        """Publish after a transition and return txn as it stands afterwards."""
        owed = await self._publish_owed(txn)
        return txn.model_copy(update={"pending_events": owed})

    async def mark_event_delivered(self, transaction_id: str, event_type: str) -> bool:
        """
        Remove one owed occurrence of event_type.

        Guarded on version but does not bump it, so a copy returned by the
        transition that owed the event still matches the row.

        Returns:
            False if event_type was not owed
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._fetch(session, transaction_id)
                owed = list(row.pending_events or []) if row is not None else []
                if event_type not in owed:
                    return False
                owed.remove(event_type)

                result = await session.execute(
                    update(TransactionModel)
                    .where(
                        TransactionModel.id == transaction_id,
                        TransactionModel.version == row.version,
                    )
                    .values(pending_events=owed or None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await session.commit()
                    return True
                await session.rollback()
        return False

    # ========================================================================
    # Callback application
    # ========================================================================

    async def apply_callback_result(
        self,
        order_ref: str,
        result,
        provenance: Provenance
    ) -> Transaction:
        """
        Apply a verified gateway outcome to the transaction it references.

        Idempotent: a repeated outcome leaves the record as is and emits
        nothing. A terminal record receiving a different outcome keeps its
        state; the disagreement is logged and recorded under
        metadata["anomalies"].

        Args:
            order_ref: Order reference the gateway reported
            result: CallbackResult or GatewayQueryResult (outcome, amount,
                external_transaction_no, response_code, gateway)
            provenance: "webhook", "return" or "reconciliation"

        Returns:
            Transaction after the call

        Raises:
            UnknownOrderRefError: No transaction with this order_ref
            AmountMismatchError: Reported amount differs from the stored amount
            StateConflictError: Lost the compare-and-set on every attempt
        """
        outcome: Optional[CallbackOutcome] = result.outcome

        for attempt in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._fetch_by_order_ref(session, order_ref)
                if row is None or row.gateway != result.gateway:
                    raise UnknownOrderRefError(
                        f"Unknown order reference: {order_ref}",
                        details={"order_ref": order_ref, "gateway": result.gateway}
                    )
                if result.amount is not None and result.amount != row.amount:
                    logger.warning(
                        f"Amount mismatch for {order_ref}: reported={result.amount}, "
                        f"stored={row.amount}, provenance={provenance}"
                    )
                    raise AmountMismatchError(
                        f"Amount mismatch for order {order_ref}",
                        details={
                            "order_ref": order_ref,
                            "reported": result.amount,
                            "expected": row.amount,
                        }
                    )

                current = TransactionStatus(row.status)
                if outcome is None:
                    return _to_transaction(row)
                target = outcome.status

                if current == target:
                    logger.info(f"Duplicate {target.value} report for {order_ref} via {provenance}, ignored")
                    return _to_transaction(row)

                if current in TERMINAL_STATUSES:
                    if target == TransactionStatus.PROCESSING:
                        logger.info(f"Late processing report for {order_ref} ({current.value}), ignored")
                        return _to_transaction(row)
                    updated = await self._record_anomaly(session, row, target, result, provenance)
                    if updated is not None:
                        return updated
                    continue

                if target not in TRANSITIONS[current]:
                    raise StateConflictError(
                        f"Cannot move {order_ref} from {current.value} to {target.value}",
                        details={"order_ref": order_ref, "from": current.value, "to": target.value}
                    )

                now = self._clock.now()
                metadata = dict(row.extra or {})
                metadata["provenance"] = provenance
                metadata["gateway_response_code"] = result.response_code
                if target == TransactionStatus.SUCCEEDED:
                    metadata["confirmed_at"] = now.isoformat()
                elif target == TransactionStatus.FAILED:
                    metadata["failure_reason"] = f"gateway_code_{result.response_code or 'unknown'}"
                if getattr(result, "bank_ref", None):
                    metadata["bank_ref"] = result.bank_ref

                event_type = EVENT_FOR_OUTCOME.get(target)
                values = {
                    "status": target.value,
                    "extra": metadata,
                    "external_transaction_no": row.external_transaction_no or result.external_transaction_no,
                }
                if event_type:
                    values["pending_events"] = _owe(row, event_type)

                if await self._compare_and_set(session, row.id, [current], values, expected_version=row.version):
                    await session.commit()
                    txn = _to_transaction(await self._fetch(session, row.id))
                else:
                    await session.rollback()
                    logger.info(f"Lost transition race on {order_ref} (attempt {attempt + 1}), re-reading")
                    continue

            logger.info(
                f"Transaction {txn.id} ({order_ref}) {current.value} -> {target.value} via {provenance}"
            )
            return await self._deliver(txn)

        raise StateConflictError(
            f"Could not apply callback for {order_ref} after {MAX_CAS_ATTEMPTS} attempts",
            details={"order_ref": order_ref}
        )

    async def _record_anomaly(
        self,
        session: AsyncSession,
        row: TransactionModel,
        reported: TransactionStatus,
        result,
        provenance: Provenance
    ) -> Optional[Transaction]:
        """Append a conflicting terminal report to metadata. None if the CAS was lost."""
        current = TransactionStatus(row.status)
        metadata = dict(row.extra or {})
        anomalies = list(metadata.get("anomalies", []))
        anomalies.append({
            "reported": reported.value,
            "current": current.value,
            "provenance": provenance,
            "response_code": result.response_code,
            "external_transaction_no": result.external_transaction_no,
            "at": self._clock.now().isoformat(),
        })
        metadata["anomalies"] = anomalies
        if reported == TransactionStatus.SUCCEEDED and current == TransactionStatus.FAILED:
            metadata["late_confirmation"] = True

        if not await self._compare_and_set(session, row.id, [current], {"extra": metadata}, expected_version=row.version):
            await session.rollback()
            return None
        await session.commit()

        logger.warning(
            f"Anomaly on {row.order_ref}: gateway reported {reported.value} via {provenance} "
            f"but transaction is {current.value}; state preserved"
        )
        return _to_transaction(await self._fetch(session, row.id))

    # ========================================================================
    # Expiration, cancellation, extension
    # ========================================================================

    async def expire(self, transaction_id: str, reason: str = "timeout", as_of: Optional[datetime] = None) -> bool:
        """
        Time out a pending transaction (pending -> failed).

        Args:
            transaction_id: Transaction to expire
            reason: Recorded in metadata and in the payment.expired event
            as_of: When given, only expire if the deadline is at or before it

        Returns:
            True if this call performed the transition
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._fetch(session, transaction_id)
                if row is None or row.status != TransactionStatus.PENDING.value:
                    return False
                if as_of is not None and row.expires_at > as_of:
                    return False

                metadata = dict(row.extra or {})
                metadata["expired_reason"] = reason
                metadata["expired_at"] = self._clock.now().isoformat()

                if await self._compare_and_set(
                    session,
                    transaction_id,
                    [TransactionStatus.PENDING],
                    {
                        "status": TransactionStatus.FAILED.value,
                        "extra": metadata,
                        "pending_events": _owe(row, "payment.expired"),
                    },
                    expected_version=row.version,
                ):
                    await session.commit()
                    txn = _to_transaction(await self._fetch(session, transaction_id))
                else:
                    await session.rollback()
                    continue

            logger.info(f"Expired transaction {transaction_id} ({txn.order_ref}), reason={reason}")
            await self._deliver(txn)
            return True
        return False

    async def cancel(self, transaction_id: str, reason: str, operator: Optional[str] = None) -> bool:
        """
        Admin cancel of a pending payment (pending -> failed).

        Raises:
            TransactionNotFoundError: No such transaction
            StateConflictError: Transaction is no longer pending
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._require(session, transaction_id)
                if row.status != TransactionStatus.PENDING.value:
                    raise StateConflictError(
                        f"Only pending transactions can be cancelled (status={row.status})",
                        details={"transaction_id": transaction_id, "status": row.status}
                    )

                metadata = dict(row.extra or {})
                metadata["cancel_reason"] = reason
                metadata["cancelled_by"] = operator
                metadata["cancelled_at"] = self._clock.now().isoformat()

                if await self._compare_and_set(
                    session,
                    transaction_id,
                    [TransactionStatus.PENDING],
                    {
                        "status": TransactionStatus.FAILED.value,
                        "extra": metadata,
                        "pending_events": _owe(row, "payment.cancelled"),
                    },
                    expected_version=row.version,
                ):
                    await session.commit()
                    txn = _to_transaction(await self._fetch(session, transaction_id))
                else:
                    await session.rollback()
                    continue

            logger.info(f"Cancelled transaction {transaction_id} by {operator or 'system'}: {reason}")
            await self._deliver(txn)
            return True

        raise StateConflictError(
            f"Could not cancel {transaction_id}: concurrent update",
            details={"transaction_id": transaction_id}
        )

    async def extend(self, transaction_id: str, extra_minutes: Optional[int] = None) -> Transaction:
        """
        Push back the payment deadline of a pending transaction.

        The new deadline is max(current deadline, now + extra_minutes); at most
        max_extensions calls succeed per transaction.

        Raises:
            TransactionNotFoundError: No such transaction
            StateConflictError: Transaction is no longer pending
            ExtensionLimitError: Extension limit already reached
        """
        minutes = extra_minutes or self.payment_timeout_minutes

        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._require(session, transaction_id)
                if row.status != TransactionStatus.PENDING.value:
                    raise StateConflictError(
                        f"Only pending transactions can be extended (status={row.status})",
                        details={"transaction_id": transaction_id, "status": row.status}
                    )

                metadata = dict(row.extra or {})
                count = int(metadata.get("extension_count", 0))
                if count >= self._max_extensions:
                    raise ExtensionLimitError(
                        f"Payment already extended {count} times",
                        details={"transaction_id": transaction_id, "max_extensions": self._max_extensions}
                    )

                now = self._clock.now()
                new_deadline = max(row.expires_at, now + timedelta(minutes=minutes))
                metadata["extension_count"] = count + 1
                history = list(metadata.get("extensions", []))
                history.append({"at": now.isoformat(), "minutes": minutes, "expires_at": new_deadline.isoformat()})
                metadata["extensions"] = history

                if await self._compare_and_set(
                    session,
                    transaction_id,
                    [TransactionStatus.PENDING],
                    {
                        "expires_at": new_deadline,
                        "extra": metadata,
                        "pending_events": _owe(row, "payment.extended"),
                    },
                    expected_version=row.version,
                ):
                    await session.commit()
                    txn = _to_transaction(await self._fetch(session, transaction_id))
                else:
                    await session.rollback()
                    continue

            logger.info(
                f"Extended transaction {transaction_id} to {new_deadline.isoformat()} "
                f"({count + 1}/{self._max_extensions})"
            )
            return await self._deliver(txn)

        raise StateConflictError(
            f"Could not extend {transaction_id}: concurrent update",
            details={"transaction_id": transaction_id}
        )

    # ========================================================================
    # Refund records
    # ========================================================================

    async def reserve_refund(
        self,
        parent_id: str,
        amount: Optional[int],
        kind: str,
        operator: str,
        reason: Optional[str] = None
    ) -> Transaction:
        """
        Validate a refund against the remaining balance and write a pending
        refund record linked to the parent.

        The parent's version is bumped in the same commit (its status,
        amount and metadata are untouched), so two concurrent reservations
        cannot both spend the same balance.

        Args:
            parent_id: Succeeded payment to refund
            amount: VND; None for a full refund means the original amount
            kind: "full" or "partial"
            operator: Who requested it
            reason: Free-text reason

        Raises:
            RefundNotAllowedError: Parent is not a succeeded payment, or a full
                refund does not cover the whole original amount
            RefundExceedsBalanceError: amount > original - refunded so far
            InvalidAmountError: amount is not positive
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                parent = await self._require(session, parent_id)
                if (
                    parent.type != TransactionType.PAYMENT.value
                    or parent.status != TransactionStatus.SUCCEEDED.value
                ):
                    raise RefundNotAllowedError(
                        f"Only succeeded payments can be refunded "
                        f"(type={parent.type}, status={parent.status})",
                        details={"transaction_id": parent_id, "status": parent.status, "type": parent.type}
                    )

                refunded = await self._refunded_total(session, parent_id)
                remaining = parent.amount - refunded
                if kind == "full":
                    amount = parent.amount if amount is None else amount
                    if amount != parent.amount or refunded > 0:
                        raise RefundNotAllowedError(
                            "A full refund must cover the whole original amount with no prior refunds",
                            details={"transaction_id": parent_id, "amount": amount, "original": parent.amount,
                                     "refunded": refunded}
                        )
                if amount is None or isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                    raise InvalidAmountError(
                        f"Refund amount must be a positive integer, got {amount!r}",
                        details={"amount": amount}
                    )
                if amount > remaining:
                    raise RefundExceedsBalanceError(
                        f"Refund of {amount} exceeds remaining balance {remaining}",
                        details={"transaction_id": parent_id, "amount": amount, "remaining": remaining,
                                 "refunded": refunded}
                    )

                if not await self._compare_and_set(
                    session,
                    parent_id,
                    [TransactionStatus.SUCCEEDED],
                    {},
                    expected_version=parent.version,
                ):
                    await session.rollback()
                    continue

                now = self._clock.now()
                refund_type = TransactionType.REFUND_FULL if kind == "full" else TransactionType.REFUND_PARTIAL
                refund = TransactionModel(
                    id=f"txn_{uuid.uuid4().hex[:16]}",
                    order_ref=f"{parent.order_ref}_rf{uuid.uuid4().hex[:8]}",
                    gateway=parent.gateway,
                    user_ref=parent.user_ref,
                    booking_ref=parent.booking_ref,
                    amount=amount,
                    method=parent.method,
                    type=refund_type.value,
                    status=TransactionStatus.PENDING.value,
                    related_transaction_id=parent_id,
                    extra={
                        "related_transaction_id": parent_id,
                        "refund_kind": kind,
                        "refund_reason": reason,
                        "requested_by": operator,
                    },
                    expires_at=now,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(refund)
                await session.commit()

            logger.info(
                f"Reserved {kind} refund {refund.id} of {amount} against {parent_id} "
                f"(remaining before: {remaining})"
            )
            return _to_transaction(refund)

        raise StateConflictError(
            f"Could not reserve refund on {parent_id}: concurrent update",
            details={"transaction_id": parent_id}
        )

    async def complete_refund(
        self,
        refund_id: str,
        success: bool,
        external_transaction_no: Optional[str] = None,
        response_code: Optional[str] = None,
        message: Optional[str] = None
    ) -> Transaction:
        """Settle a pending refund record: refunded on success, failed otherwise."""
        target = TransactionStatus.REFUNDED if success else TransactionStatus.FAILED

        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._require(session, refund_id)
                if row.status != TransactionStatus.PENDING.value:
                    raise StateConflictError(
                        f"Refund {refund_id} is already {row.status}",
                        details={"transaction_id": refund_id, "status": row.status}
                    )
                metadata = dict(row.extra or {})
                metadata["gateway_response_code"] = response_code
                metadata["gateway_message"] = message
                metadata.pop("requires_requery", None)
                metadata["settled_at"] = self._clock.now().isoformat()

                if await self._compare_and_set(
                    session,
                    refund_id,
                    [TransactionStatus.PENDING],
                    {
                        "status": target.value,
                        "extra": metadata,
                        "external_transaction_no": external_transaction_no,
                    },
                    expected_version=row.version,
                ):
                    await session.commit()
                    txn = _to_transaction(await self._fetch(session, refund_id))
                    logger.info(f"Refund {refund_id} settled as {target.value} (code={response_code})")
                    return txn
                await session.rollback()

        raise StateConflictError(
            f"Could not settle refund {refund_id}: concurrent update",
            details={"transaction_id": refund_id}
        )

    async def flag_requires_requery(self, refund_id: str, error: str) -> Transaction:
        """Mark a refund whose gateway outcome is unknown; it keeps blocking the balance."""
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                row = await self._require(session, refund_id)
                metadata = dict(row.extra or {})
                metadata["requires_requery"] = True
                metadata["last_error"] = error

                if await self._compare_and_set(
                    session,
                    refund_id,
                    [TransactionStatus(row.status)],
                    {"extra": metadata},
                    expected_version=row.version,
                ):
                    await session.commit()
                    logger.warning(f"Refund {refund_id} outcome unknown, flagged for re-query: {error}")
                    return _to_transaction(await self._fetch(session, refund_id))
                await session.rollback()

        raise StateConflictError(
            f"Could not flag refund {refund_id}: concurrent update",
            details={"transaction_id": refund_id}
        )
