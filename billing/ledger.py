"""
Credit ledger store.

The ledger is append-only: every balance change is a new row carrying the
user's balance immediately after it. Appends for one user are serialized by
an optimistic compare-and-set on the per-user ``sequence`` column, which has
a unique index, so two workers that read the same last balance cannot both
commit an entry built on it.

Two write paths remove credits:

- ``LedgerStore.guarded_spend`` checks the balance first. Feature code
  (evidence scans, outreach packs) only ever holds a ``LedgerStore``.
- ``ReversalLedger.force_debit`` never checks. Only the refund workflow
  constructs a ``ReversalLedger``.
"""

import logging
import time
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db import AlreadyExists, LedgerEntryRow, insert_once
from .errors import InsufficientCredits, LedgerContention, ValidationError
from .models import LedgerEntry, ReferenceType

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
RETRY_BACKOFF_SECONDS = 0.01

# Reference types ordinary features may spend against.
SPENDABLE_REFERENCE_TYPES = (ReferenceType.EVIDENCE_RUN, ReferenceType.OUTREACH_PACK)

# Zero-amount test markers are tagged as a test or as the feature being exercised.
TEST_MARKER_REFERENCE_TYPES = (ReferenceType.ADMIN_TEST,) + SPENDABLE_REFERENCE_TYPES


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")


def _latest_row(session: Session, user_id: int) -> Optional[LedgerEntryRow]:
    query = (
        select(LedgerEntryRow)
        .where(LedgerEntryRow.user_id == user_id)
        .order_by(LedgerEntryRow.sequence.desc())
        .limit(1)
    )
    return session.scalars(query).first()


def _append_entry(
    session: Session,
    *,
    user_id: int,
    amount: int,
    reason: str,
    reference_type: ReferenceType,
    reference_id: Optional[int],
    max_retries: int,
    precondition: Optional[Callable[[int], None]] = None,
) -> LedgerEntry:
    """
    Append one entry using compare-and-set on the user's next sequence number.

    Args:
        precondition: Called with the balance read for this attempt; raising
            aborts the append without writing

    Raises:
        LedgerContention: every attempt lost the race for the next sequence
    """
    for attempt in range(1, max_retries + 1):
        latest = _latest_row(session, user_id)
        current_balance = latest.balance_after if latest else 0
        next_sequence = latest.sequence + 1 if latest else 1

        if precondition is not None:
            precondition(current_balance)

        result = insert_once(
            session,
            LedgerEntryRow,
            ["user_id", "sequence"],
            {
                "user_id": user_id,
                "sequence": next_sequence,
                "amount": amount,
                "reason": reason,
                "reference_type": ReferenceType(reference_type).value,
                "reference_id": reference_id,
                "balance_after": current_balance + amount,
            },
        )
        if isinstance(result, AlreadyExists):
            logger.warning(
                "Ledger sequence conflict for user %s at sequence %s (attempt %s/%s)",
                user_id, next_sequence, attempt, max_retries,
            )
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
            continue
        return LedgerEntry.model_validate(result.row)

    raise LedgerContention(f"Ledger append for user {user_id} lost {max_retries} sequence races")


class LedgerStore:
    """Balance reads, grants and guarded spends for one session."""

    def __init__(self, session: Session, max_retries: int = DEFAULT_MAX_RETRIES):
        self.session = session
        self.max_retries = max_retries

    def grant(
        self,
        user_id: int,
        amount: int,
        reason: str,
        reference_type: ReferenceType,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        _require_positive(amount)
        entry = _append_entry(
            self.session,
            user_id=user_id,
            amount=amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            max_retries=self.max_retries,
        )
        logger.info("Granted %s credits to user %s (%s)", amount, user_id, reason)
        return entry

    def guarded_spend(
        self,
        user_id: int,
        amount: int,
        reason: str,
        reference_type: ReferenceType,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        """Spend credits only if the balance covers them; otherwise raise InsufficientCredits."""
        _require_positive(amount)

        def _check_funds(balance: int) -> None:
            if balance < amount:
                raise InsufficientCredits(user_id, amount, balance)

        return _append_entry(
            self.session,
            user_id=user_id,
            amount=-amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            max_retries=self.max_retries,
            precondition=_check_funds,
        )

    def grant_signup_bonus(self, user_id: int, amount: int) -> Optional[LedgerEntry]:
        """Grant the one-time bonus if the user has no ledger history; return None otherwise."""
        _require_positive(amount)
        result = insert_once(
            self.session,
            LedgerEntryRow,
            ["user_id", "sequence"],
            {
                "user_id": user_id,
                "sequence": 1,
                "amount": amount,
                "reason": "Signup bonus",
                "reference_type": ReferenceType.SIGNUP_BONUS.value,
                "reference_id": None,
                "balance_after": amount,
            },
        )
        if isinstance(result, AlreadyExists):
            return None
        return LedgerEntry.model_validate(result.row)

    def record_admin_test(
        self,
        user_id: int,
        reason: str,
        reference_type: ReferenceType = ReferenceType.ADMIN_TEST,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        """Append a zero-amount marker so an admin test run shows up in history without charging."""
        if ReferenceType(reference_type) not in TEST_MARKER_REFERENCE_TYPES:
            raise ValidationError(f"Test markers cannot be tagged {ReferenceType(reference_type).value!r}")
        return _append_entry(
            self.session,
            user_id=user_id,
            amount=0,
            reason=f"ADMIN TEST (no charge): {reason}",
            reference_type=reference_type,
            reference_id=reference_id,
            max_retries=self.max_retries,
        )

    def get_balance(self, user_id: int) -> int:
        latest = _latest_row(self.session, user_id)
        return latest.balance_after if latest else 0

    def sum_amounts(self, user_id: int) -> int:
        total = self.session.scalar(
            select(func.coalesce(func.sum(LedgerEntryRow.amount), 0))
            .where(LedgerEntryRow.user_id == user_id)
        )
        return int(total or 0)

    def list_entries(self, user_id: int, limit: Optional[int] = None) -> list[LedgerEntry]:
        query = (
            select(LedgerEntryRow)
            .where(LedgerEntryRow.user_id == user_id)
            .order_by(LedgerEntryRow.sequence.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return [LedgerEntry.model_validate(row) for row in self.session.scalars(query)]

    def list_all(
        self,
        user_id: Optional[int] = None,
        reference_type: Optional[ReferenceType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        """Admin browse across users, newest first, with the unpaginated total."""
        conditions = []
        if user_id is not None:
            conditions.append(LedgerEntryRow.user_id == user_id)
        if reference_type is not None:
            conditions.append(LedgerEntryRow.reference_type == ReferenceType(reference_type).value)

        query = (
            select(LedgerEntryRow)
            .where(*conditions)
            .order_by(LedgerEntryRow.created_at.desc(), LedgerEntryRow.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total = self.session.scalar(
            select(func.count()).select_from(LedgerEntryRow).where(*conditions)
        )
        entries = [LedgerEntry.model_validate(row) for row in self.session.scalars(query)]
        return entries, int(total or 0)


class ReversalLedger:
    """Unchecked debits for refund and chargeback reversal.

    The user may already have spent the credits being clawed back, so the
    balance is allowed to go negative here.
    """

    def __init__(self, session: Session, max_retries: int = DEFAULT_MAX_RETRIES):
        self.session = session
        self.max_retries = max_retries

    def force_debit(
        self,
        user_id: int,
        amount: int,
        reason: str,
        reference_type: ReferenceType,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        _require_positive(amount)
        entry = _append_entry(
            self.session,
            user_id=user_id,
            amount=-amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            max_retries=self.max_retries,
        )
        if entry.balance_after < 0:
            logger.warning(
                "Force debit of %s drove user %s to a negative balance (%s)",
                amount, user_id, entry.balance_after,
            )
        return entry
