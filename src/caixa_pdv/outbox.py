"""Persistence outbox for remote writes.

Every user-facing action changes the local :class:`~caixa_pdv.engine.AppState`
first and then queues the matching remote write here. Flushing drains the
queue in FIFO order against a repository; failed entries stay queued with an
attempt counter and the last error message so a later flush can retry them.
Entries are keyed by ``(kind, ref_id)``: queueing the same entity again
replaces the pending payload instead of adding a duplicate write.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from . import log
from .constants import OutboxKind
from .records import (
    product_from_payload,
    sale_from_payload,
    withdrawal_from_payload,
)
from .reporting import local_now


@dataclass(frozen=True)
class OutboxEntry:
    """One queued remote write."""

    entry_id: str
    kind: OutboxKind
    ref_id: str
    payload: Dict[str, Any]
    created_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> tuple[OutboxKind, str]:
        return (self.kind, self.ref_id)


@dataclass(frozen=True)
class FlushResult:
    """Outcome of a single :meth:`Outbox.flush` call."""

    delivered: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def clean(self) -> bool:
        return self.failed == 0


@dataclass
class Outbox:
    """FIFO queue of pending remote writes, deduplicated by entity."""

    entries: List[OutboxEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def enqueue(self, kind: OutboxKind, ref_id: str, payload: Dict[str, Any]) -> OutboxEntry:
        """Queue a write for ``(kind, ref_id)``.

        When an entry for the same entity is already pending, it is replaced by
        the new payload and moved to the back of the queue, keeping its attempt
        counter. Later writes therefore never run before earlier ones.
        """

        kind = OutboxKind(kind)
        for index, entry in enumerate(self.entries):
            if entry.key == (kind, ref_id):
                updated = replace(entry, payload=dict(payload))
                del self.entries[index]
                self.entries.append(updated)
                log.debug("Replaced pending %s outbox entry for '%s'", kind.value, ref_id)
                return updated

        entry = OutboxEntry(
            entry_id=uuid.uuid4().hex,
            kind=kind,
            ref_id=ref_id,
            payload=dict(payload),
            created_at=local_now(),
        )
        self.entries.append(entry)
        log.debug("Queued %s outbox entry for '%s'", kind.value, ref_id)
        return entry

    def pending(self, max_attempts: Optional[int] = None) -> List[OutboxEntry]:
        """Return entries still eligible for delivery."""

        if max_attempts is None:
            return list(self.entries)
        return [entry for entry in self.entries if entry.attempts < max_attempts]

    def exhausted(self, max_attempts: int) -> List[OutboxEntry]:
        """Return entries parked after reaching ``max_attempts`` failures."""

        return [entry for entry in self.entries if entry.attempts >= max_attempts]

    def reset_attempts(self) -> int:
        """Clear the attempt counters so parked entries are retried."""

        parked = sum(1 for entry in self.entries if entry.attempts)
        self.entries = [replace(entry, attempts=0) for entry in self.entries]
        if parked:
            log.info("Reset attempt counters on %d outbox entries", parked)
        return parked

    def flush(self, repository: Any, *, max_attempts: Optional[int] = None) -> FlushResult:
        """Deliver pending entries to ``repository`` in FIFO order.

        Product entries are delivered together through
        ``repository.persist_products`` so a sale touching several products
        costs a single write. Any exception raised by the repository is logged
        and recorded on the failing entry; it never propagates.

        Args:
            repository: Object implementing the repository protocol.
            max_attempts (int | None): Entries that already failed this many
                times are skipped. ``None`` retries everything.

        Returns:
            FlushResult: Counts of delivered, failed and skipped entries.
        """

        eligible = {entry.entry_id for entry in self.pending(max_attempts)}
        skipped = len(self.entries) - len(eligible)
        delivered: set[str] = set()
        failures: Dict[str, str] = {}

        products = [entry for entry in self.entries if entry.entry_id in eligible and entry.kind is OutboxKind.PRODUCT]
        if products:
            try:
                repository.persist_products([product_from_payload(entry.payload) for entry in products])
            except Exception as exc:
                log.warning("Failed to persist %d product(s): %s", len(products), exc)
                failures.update({entry.entry_id: str(exc) for entry in products})
            else:
                delivered.update(entry.entry_id for entry in products)

        for entry in self.entries:
            if entry.entry_id not in eligible or entry.kind is OutboxKind.PRODUCT:
                continue
            try:
                _DISPATCH[entry.kind](repository, entry.payload)
            except Exception as exc:
                log.warning("Failed to persist %s '%s': %s", entry.kind.value, entry.ref_id, exc)
                failures[entry.entry_id] = str(exc)
            else:
                delivered.add(entry.entry_id)

        remaining: List[OutboxEntry] = []
        for entry in self.entries:
            if entry.entry_id in delivered:
                continue
            if entry.entry_id in failures:
                entry = replace(entry, attempts=entry.attempts + 1, last_error=failures[entry.entry_id])
            remaining.append(entry)
        self.entries = remaining

        result = FlushResult(delivered=len(delivered), failed=len(failures), skipped=skipped)
        if delivered or failures:
            log.info(
                "Outbox flush: %d delivered, %d failed, %d pending",
                result.delivered,
                result.failed,
                len(self.entries),
            )
        return result


def _persist_sale(repository: Any, payload: Dict[str, Any]) -> None:
    repository.persist_sale(sale_from_payload(payload))


def _persist_drawer_open(repository: Any, payload: Dict[str, Any]) -> None:
    repository.persist_drawer_open(
        payload["day_key"],
        Decimal(payload["opening_amount"]),
        Decimal(payload["previous_closing_cash"]),
    )


def _persist_drawer_close(repository: Any, payload: Dict[str, Any]) -> None:
    repository.persist_drawer_close(payload["day_key"], Decimal(payload["closing_cash"]))


def _persist_withdrawal(repository: Any, payload: Dict[str, Any]) -> None:
    repository.persist_withdrawal(withdrawal_from_payload(payload["withdrawal"]), payload["day_key"])


_DISPATCH: Dict[OutboxKind, Callable[[Any, Dict[str, Any]], None]] = {
    OutboxKind.SALE: _persist_sale,
    OutboxKind.DRAWER_OPEN: _persist_drawer_open,
    OutboxKind.DRAWER_CLOSE: _persist_drawer_close,
    OutboxKind.WITHDRAWAL: _persist_withdrawal,
}


def entry_to_payload(entry: OutboxEntry) -> Dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "kind": entry.kind.value,
        "ref_id": entry.ref_id,
        "payload": entry.payload,
        "created_at": entry.created_at.isoformat(),
        "attempts": entry.attempts,
        "last_error": entry.last_error,
    }


def entry_from_payload(payload: Dict[str, Any]) -> OutboxEntry:
    return OutboxEntry(
        entry_id=str(payload["entry_id"]),
        kind=OutboxKind(payload["kind"]),
        ref_id=str(payload["ref_id"]),
        payload=dict(payload["payload"]),
        created_at=datetime.fromisoformat(payload["created_at"]),
        attempts=int(payload.get("attempts", 0)),
        last_error=payload.get("last_error"),
    )
