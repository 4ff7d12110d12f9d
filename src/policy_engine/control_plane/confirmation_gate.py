"""
Fail-closed confirmation gate for dangerous operations.

A dangerous operation may execute only after a human (or the caller acting
for one) resolves its confirmation record to ``approved``. Absent, pending and
denied records all block execution, and nothing ever approves by timeout.

Records are keyed by operation id; each operation has at most one record,
created on request and resolved exactly once. A pending record whose
operation will never run (abandoned, or its change request cancelled) is
withdrawn instead. Resolution may come from any thread; waiters are woken on
the event loop they suspended in.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeAlias

import structlog

from policy_engine.domain import ids as domain_ids
from policy_engine.domain.errors import (
    ConfirmationDenied,
    ConfirmationPending,
    DuplicateConfirmation,
    OperationCancelled,
    UnknownConfirmation,
)
from policy_engine.domain.models import ConfirmationDecision, ConfirmationRecord, Operation
from policy_engine.utils.concurrency import (
    CancellationToken,
    KeyedLocks,
    call_in_loop,
    run_with_timeout,
)

ApprovalRequester: TypeAlias = Callable[[ConfirmationRecord, Operation], object]
ClockFn: TypeAlias = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class _DecisionSignal:
    """One-shot wake-up for tasks waiting on a record, whatever loop they run on."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._fired = False
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []

    def attach(self) -> asyncio.Future[None]:
        loop = asyncio.get_running_loop()
        woken: asyncio.Future[None] = loop.create_future()
        with self._guard:
            if not self._fired:
                self._waiters.append((loop, woken))
                return woken
        woken.set_result(None)
        return woken

    def detach(self, woken: asyncio.Future[None]) -> None:
        with self._guard:
            self._waiters = [item for item in self._waiters if item[1] is not woken]

    def fire(self) -> None:
        with self._guard:
            self._fired = True
            waiters, self._waiters = self._waiters, []
        for loop, woken in waiters:
            call_in_loop(loop, _wake, woken)


def _wake(woken: asyncio.Future[None]) -> None:
    if not woken.done():
        woken.set_result(None)


class ConfirmationGate:
    """Keyed store of confirmation records with async decision waits."""

    def __init__(
        self,
        *,
        requester: ApprovalRequester | None = None,
        clock: ClockFn = _utc_now,
        id_factory: Callable[[], str] = domain_ids.generate_confirmation_id,
        logger: Any | None = None,
    ) -> None:
        self._requester = requester
        self._clock = clock
        self._id_factory = id_factory
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._locks = KeyedLocks()
        self._records: dict[str, ConfirmationRecord] = {}
        self._record_by_operation: dict[str, str] = {}
        self._signals: dict[str, _DecisionSignal] = {}

    def request_confirmation(self, op: Operation) -> ConfirmationRecord:
        """Create (or return the still-pending) record for a dangerous operation."""
        if not op.dangerous:
            raise ValueError(f"operation {op.id} is not dangerous; no confirmation is needed")

        with self._locks.hold(op.id):
            existing_id = self._record_by_operation.get(op.id)
            if existing_id is not None:
                existing = self._records[existing_id]
                if existing.is_resolved:
                    raise DuplicateConfirmation(
                        f"confirmation for operation {op.id} was already {existing.decision.value}",
                        operation_id=op.id,
                        confirmation_id=existing.id,
                    )
                return existing

            record = ConfirmationRecord(
                id=self._id_factory(),
                operation_id=op.id,
                decision=ConfirmationDecision.PENDING,
                requested_at=self._clock(),
            )
            self._signals[record.id] = _DecisionSignal()
            self._records[record.id] = record
            self._record_by_operation[op.id] = record.id

        category = op.danger_category
        self._logger.info(
            "confirmation_requested",
            confirmation_id=record.id,
            operation_id=op.id,
            kind=op.kind.value,
            danger_category=category.value if category is not None else None,
            reversible=op.reversible,
        )
        self._notify_requester(record, op)
        return record

    def resolve(
        self,
        record_id: str,
        decision: ConfirmationDecision | str,
        *,
        decided_by: str | None = None,
    ) -> ConfirmationRecord:
        """Resolve ``record_id`` exactly once to ``approved`` or ``denied``."""
        parsed = ConfirmationDecision(decision)
        if parsed is ConfirmationDecision.PENDING:
            raise ValueError("a confirmation can only be resolved to approved or denied")

        current = self._records.get(record_id)
        if current is None:
            raise UnknownConfirmation(
                f"unknown confirmation record {record_id!r}", confirmation_id=record_id
            )

        with self._locks.hold(current.operation_id):
            current = self._records.get(record_id)
            if current is None:
                raise UnknownConfirmation(
                    f"confirmation {record_id} was withdrawn", confirmation_id=record_id
                )
            if current.is_resolved:
                raise DuplicateConfirmation(
                    f"confirmation {record_id} was already resolved as {current.decision.value}",
                    operation_id=current.operation_id,
                    confirmation_id=record_id,
                )
            resolved = current.resolve(parsed, at=self._clock(), decided_by=decided_by)
            self._records[record_id] = resolved
            signal = self._signals.pop(record_id, None)
        self._locks.discard(resolved.operation_id)

        if signal is not None:
            signal.fire()
        self._logger.info(
            "confirmation_resolved",
            confirmation_id=record_id,
            operation_id=resolved.operation_id,
            decision=resolved.decision.value,
            decided_by=decided_by,
        )
        return resolved

    def get(self, record_id: str) -> ConfirmationRecord:
        record = self._records.get(record_id)
        if record is None:
            raise UnknownConfirmation(
                f"unknown confirmation record {record_id!r}", confirmation_id=record_id
            )
        return record

    def record_for(self, operation_id: str) -> ConfirmationRecord | None:
        record_id = self._record_by_operation.get(operation_id)
        return None if record_id is None else self._records.get(record_id)

    def may_execute(self, op: Operation) -> bool:
        if not op.dangerous:
            return True
        record = self.record_for(op.id)
        return record is not None and record.is_approved

    def require_approval(self, op: Operation) -> None:
        """Raise unless ``op`` may execute right now."""
        if not op.dangerous:
            return
        record = self.record_for(op.id)
        if record is None or not record.is_resolved:
            raise ConfirmationPending(
                f"dangerous operation {op.id} has no approved confirmation",
                operation_id=op.id,
                confirmation_id=None if record is None else record.id,
            )
        if not record.is_approved:
            raise ConfirmationDenied(
                f"dangerous operation {op.id} was denied",
                operation_id=op.id,
                confirmation_id=record.id,
            )

    async def wait_for_decision(
        self, record_id: str, cancel_token: CancellationToken
    ) -> ConfirmationRecord:
        """Suspend until ``record_id`` is resolved or ``cancel_token`` fires.

        Raises ``OperationCancelled`` on cancellation and when the record is
        withdrawn while the caller waits.
        """
        record = self.get(record_id)
        signal = self._signals.get(record_id)
        if record.is_resolved or signal is None:
            return self._settled(record)

        woken = signal.attach()
        try:
            await run_with_timeout(woken, None, cancel_token)
        except asyncio.CancelledError:
            if not cancel_token.is_cancelled:
                raise
            raise OperationCancelled(
                f"wait for confirmation {record_id} was cancelled",
                operation_id=record.operation_id,
            ) from None
        finally:
            signal.detach(woken)
        return self._settled(record)

    def withdraw(self, operation_id: str) -> ConfirmationRecord | None:
        """Drop the pending record of an operation that will never run.

        Resolved records stay, ``may_execute`` reads them. Returns the withdrawn
        record, or ``None`` when nothing was pending.
        """
        signal: _DecisionSignal | None = None
        with self._locks.hold(operation_id):
            record_id = self._record_by_operation.get(operation_id)
            record = None if record_id is None else self._records.get(record_id)
            if record is not None and not record.is_resolved:
                del self._record_by_operation[operation_id]
                del self._records[record.id]
                signal = self._signals.pop(record.id, None)
            else:
                record = None
        self._locks.discard(operation_id)
        if record is None:
            return None

        if signal is not None:
            signal.fire()
        self._logger.info(
            "confirmation_withdrawn", confirmation_id=record.id, operation_id=operation_id
        )
        return record

    def pending(self) -> tuple[ConfirmationRecord, ...]:
        records = [record for record in list(self._records.values()) if not record.is_resolved]
        return tuple(sorted(records, key=lambda record: (record.requested_at, record.id)))

    def _settled(self, waited: ConfirmationRecord) -> ConfirmationRecord:
        record = self._records.get(waited.id)
        if record is None:
            raise OperationCancelled(
                f"confirmation {waited.id} was withdrawn",
                operation_id=waited.operation_id,
            )
        return record

    def _notify_requester(self, record: ConfirmationRecord, op: Operation) -> None:
        if self._requester is None:
            return
        try:
            self._requester(record, op)
        except Exception as exc:  # noqa: BLE001
            # The record stays pending; a lost request can only delay execution.
            self._logger.warning(
                "confirmation_request_delivery_failed",
                confirmation_id=record.id,
                operation_id=op.id,
                error=repr(exc),
            )


__all__ = ["ApprovalRequester", "ConfirmationGate"]
