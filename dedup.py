"""Content signatures for spotting re-imported transactions.

A signature is ``YYYY-MM-DD_<abs amount>_<description>``: the instant is
truncated to its day and the amount sign dropped, because bank exports differ
in time precision and sign convention between downloads. Two distinct
transactions on the same day with the same amount and description therefore
collide; they are flagged, never merged, and the caller decides.
"""

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Transaction


class DupStatus(str, Enum):
    none = "none"
    in_store = "in_store"
    in_batch = "in_batch"


def signature(txn) -> str:
    day = txn.occurred_at.date().isoformat()
    amount = (Decimal(abs(int(txn.amount_cents))) / 100).quantize(Decimal("0.01"))
    description = (txn.description or "").strip().lower()
    return f"{day}_{amount}_{description}"


def existing_signatures(session: Session) -> set[str]:
    rows = session.execute(
        select(Transaction.occurred_at, Transaction.amount_cents, Transaction.description)
    )
    return {signature(row) for row in rows}


def classify(batch: Sequence, existing: set[str]) -> dict[str, DupStatus]:
    statuses: dict[str, DupStatus] = {}
    seen: set[str] = set()
    for txn in batch:
        sig = signature(txn)
        if sig in existing:
            statuses[txn.id] = DupStatus.in_store
        elif sig in seen:
            statuses[txn.id] = DupStatus.in_batch
        else:
            statuses[txn.id] = DupStatus.none
        seen.add(sig)
    return statuses


def select_for_import(
    batch: Iterable,
    statuses: Mapping[str, DupStatus],
    overrides: Optional[Mapping[str, bool]] = None,
) -> list:
    """Default policy keeps only rows with no duplicate status.

    ``overrides`` maps a transaction id to an explicit keep/skip decision.
    """
    overrides = overrides or {}
    selected = []
    for txn in batch:
        keep = statuses.get(txn.id, DupStatus.none) == DupStatus.none
        keep = overrides.get(txn.id, keep)
        if keep:
            selected.append(txn)
    return selected
