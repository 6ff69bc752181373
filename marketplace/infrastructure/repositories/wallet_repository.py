# marketplace/infrastructure/repositories/wallet_repository.py

from decimal import Decimal
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy import select

from marketplace.infrastructure.db.models import Wallet, WalletTransaction
from marketplace.domain.constants import TransactionType
from marketplace.domain.exceptions import DomainRuleViolation, InsufficientFundsError, NotFoundError


class WalletRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: int) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_wallet(self, user_id: int) -> Wallet:
        """
        SELECT ... FOR UPDATE
        Prevents lost updates on the balance.
        """

        stmt = (
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .with_for_update()
        )

        wallet = self.db.execute(stmt).scalar_one_or_none()

        if not wallet:
            raise NotFoundError("Wallet", user_id)

        return wallet

    def lock_pair(self, source_user_id: int, target_user_id: int) -> tuple[Wallet, Wallet]:
        # Lock in user id order so opposite transfers cannot deadlock.
        locked = {
            user_id: self.lock_wallet(user_id)
            for user_id in sorted((source_user_id, target_user_id))
        }
        return locked[source_user_id], locked[target_user_id]

    def get_transaction_by_reference(self, reference: str) -> WalletTransaction | None:
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.reference == reference)
            .order_by(WalletTransaction.created_at)
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def credit(
        self,
        wallet: Wallet,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        reference: str,
    ) -> WalletTransaction:
        wallet.balance += amount
        return self._record(wallet, amount, transaction_type, description, reference)

    def transfer(
        self,
        source: Wallet,
        target: Wallet,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
    ) -> str:
        if source.currency != target.currency:
            raise DomainRuleViolation(
                "Wallet currencies do not match",
                details={"source": source.currency, "target": target.currency},
            )
        if source.balance < amount:
            raise InsufficientFundsError(
                "Insufficient wallet balance",
                details={"balance": str(source.balance), "requested": str(amount)},
            )

        transfer_id = str(uuid4())
        source.balance -= amount
        target.balance += amount
        self._record(source, -amount, transaction_type, description, transfer_id)
        self._record(target, amount, transaction_type, description, transfer_id)
        return transfer_id

    def _record(
        self,
        wallet: Wallet,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        reference: str,
    ) -> WalletTransaction:
        transaction = WalletTransaction(
            wallet_id=wallet.id,
            type=transaction_type,
            amount=amount,
            currency=wallet.currency,
            status="COMPLETED",
            description=description,
            reference=reference,
        )
        self.db.add(transaction)
        return transaction
