"""Append-oriented wallet ledger backed by ``wallet/wallet-history.json``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .canonical import fingerprint
from .errors import CorruptDocument, ValidationFailure
from .fs_json import locked_file, read_json, write_json
from .models import TransactionType, WalletTransaction, to_money
from .paths import WALLET_HISTORY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerWrite:
    transaction: WalletTransaction
    created: bool


def transaction_key(user_id: int, kind: TransactionType, reference: str) -> str:
    """Deterministic transaction id for ``(userId, type, reference)``."""
    digest = fingerprint({"userId": int(user_id), "type": kind.value, "reference": str(reference)})
    return f"txn_{digest[:24]}"


class WalletLedger:
    """Credits and debits keyed so each ``(user, type, invoice)`` is recorded once."""

    def __init__(
        self,
        data_root: Path,
        *,
        locking: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.path = data_root / WALLET_HISTORY
        self.locking = locking
        self.clock = clock

    def transactions(self) -> list[WalletTransaction]:
        """Return every ledger entry in append order.

        Raises:
            CorruptDocument: If the ledger is not a JSON array of valid transactions.
        """
        raw = read_json(self.path, default=[])
        if not isinstance(raw, list):
            raise CorruptDocument(self.path, "wallet history must be a JSON array")
        try:
            return [WalletTransaction.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise CorruptDocument(self.path, f"malformed transaction: {exc}") from exc

    def transactions_for(self, user_id: int) -> list[WalletTransaction]:
        return [txn for txn in self.transactions() if txn.user_id == int(user_id)]

    def find_credit(self, user_id: int, invoice_number: str) -> WalletTransaction | None:
        return self._find(self.transactions(), int(user_id), TransactionType.CREDIT, str(invoice_number))

    def credits_for_invoice(self, invoice_number: str) -> list[WalletTransaction]:
        return [
            txn
            for txn in self.transactions()
            if txn.type is TransactionType.CREDIT and txn.invoice_number == str(invoice_number)
        ]

    def balance(self, user_id: int) -> Decimal:
        total = Decimal("0.00")
        for txn in self.transactions_for(user_id):
            amount = to_money(txn.amount)
            total += amount if txn.type is TransactionType.CREDIT else -amount
        return total

    def credit(
        self,
        user_id: int,
        amount: Decimal | float,
        invoice_number: str,
        *,
        project_id: str | None = None,
        source: str = "invoice",
    ) -> LedgerWrite:
        """Record a credit once per ``(user_id, invoice_number)``.

        Returns:
            The stored transaction, with ``created=False`` when an identical
            key was already in the ledger (nothing is written then).
        """
        return self._append(TransactionType.CREDIT, user_id, amount, invoice_number, project_id, source)

    def debit(
        self,
        user_id: int,
        amount: Decimal | float,
        reference: str,
        *,
        project_id: str | None = None,
        source: str = "withdrawal",
    ) -> LedgerWrite:
        """Record a debit once per ``(user_id, reference)``.

        Raises:
            ValidationFailure: If the debit exceeds the user's balance.
        """
        return self._append(TransactionType.DEBIT, user_id, amount, reference, project_id, source)

    def _append(
        self,
        kind: TransactionType,
        user_id: int,
        amount: Decimal | float,
        reference: str,
        project_id: str | None,
        source: str,
    ) -> LedgerWrite:
        money = to_money(amount)
        if money <= 0:
            raise ValidationFailure(f"{kind.value} amount must be positive, got {money}")
        with locked_file(self.path, enabled=self.locking):
            ledger = self.transactions()
            existing = self._find(ledger, int(user_id), kind, str(reference))
            if existing is not None:
                logger.info("Skipping duplicate %s for user %s on %s", kind.value, user_id, reference)
                return LedgerWrite(existing, created=False)
            if kind is TransactionType.DEBIT:
                balance = sum(
                    (to_money(t.amount) if t.type is TransactionType.CREDIT else -to_money(t.amount))
                    for t in ledger
                    if t.user_id == int(user_id)
                )
                if money > balance:
                    raise ValidationFailure(f"debit of {money} exceeds balance {balance} for user {user_id}")
            transaction = WalletTransaction(
                transaction_id=transaction_key(int(user_id), kind, str(reference)),
                user_id=int(user_id),
                type=kind,
                amount=float(money),
                project_id=project_id,
                invoice_number=str(reference),
                date=self.clock(),
                source=source,
            )
            ledger.append(transaction)
            write_json(self.path, [txn.to_document() for txn in ledger])
        logger.info("Recorded %s of %s for user %s (%s)", kind.value, money, user_id, reference)
        return LedgerWrite(transaction, created=True)

    @staticmethod
    def _find(
        ledger: list[WalletTransaction], user_id: int, kind: TransactionType, reference: str
    ) -> WalletTransaction | None:
        for txn in ledger:
            if txn.user_id == user_id and txn.type is kind and txn.invoice_number == reference:
                return txn
        return None
