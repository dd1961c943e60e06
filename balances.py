from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol


class LedgerRow(Protocol):
    id: str
    account_id: str
    occurred_at: datetime
    amount_cents: int


@dataclass(frozen=True)
class BalanceEntry:
    transaction: LedgerRow
    balance_after_cents: int


@dataclass
class RunningBalances:
    """Running balance after every transaction, per account.

    ``ascending`` is the computation order; ``descending`` is its exact
    reverse, so rows sharing an instant keep a consistent relative order in
    both views.
    """

    ascending: list[BalanceEntry] = field(default_factory=list)

    @property
    def descending(self) -> list[BalanceEntry]:
        return list(reversed(self.ascending))

    def for_account(self, account_id: str) -> list[BalanceEntry]:
        return [e for e in self.ascending if e.transaction.account_id == account_id]

    def final_balances(self) -> dict[str, int]:
        balances: dict[str, int] = {}
        for entry in self.ascending:
            balances[entry.transaction.account_id] = entry.balance_after_cents
        return balances

    def by_transaction_id(self) -> dict[str, int]:
        return {e.transaction.id: e.balance_after_cents for e in self.ascending}


def chronological_key(txn: LedgerRow) -> tuple[datetime, str]:
    # Id breaks ties between rows sharing an instant (transfer legs, bulk entry).
    return (txn.occurred_at, txn.id)


def compute_running_balances(transactions: Iterable[LedgerRow]) -> RunningBalances:
    ordered = sorted(transactions, key=chronological_key)
    running: dict[str, int] = {}
    entries: list[BalanceEntry] = []
    for txn in ordered:
        balance = running.get(txn.account_id, 0) + txn.amount_cents
        running[txn.account_id] = balance
        entries.append(BalanceEntry(transaction=txn, balance_after_cents=balance))
    return RunningBalances(ascending=entries)
