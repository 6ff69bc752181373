# marketplace/application/wallet_operations.py

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from marketplace.domain.constants import (
    GAMIFICATION_ACTIONS,
    MAX_PAYOUT_AMOUNT,
    MAX_TIP_AMOUNT,
    MAX_TOP_UP_AMOUNT,
    MODULE_WALLET,
    NotificationType,
    Role,
    SocketEvent,
    TransactionType,
)
from marketplace.domain.exceptions import (
    DomainRuleViolation,
    IdempotencyConflictError,
    NotFoundError,
    PaymentVerificationError,
    ValidationError,
)
from marketplace.domain.operations import DomainOperation, OperationResult, UnitOfWork
from marketplace.domain.side_effects import SideEffectDescriptor
from marketplace.infrastructure.db.models import Wallet
from marketplace.infrastructure.repositories.booking_repository import BookingRepository
from marketplace.infrastructure.repositories.user_repository import UserRepository
from marketplace.infrastructure.repositories.wallet_repository import WalletRepository


logger = logging.getLogger(__name__)


class PaymentVerifier(Protocol):
    def verify(self, order_id: str, payment_id: str, signature: str) -> None:
        ...

    def order_amount(self, order_id: str) -> Decimal:
        ...


@dataclass(frozen=True)
class PayoutRequest:
    merchant_id: int
    recipient_id: int
    amount: Decimal


@dataclass(frozen=True)
class TipRequest:
    customer_id: int
    staff_id: int
    amount: Decimal
    booking_id: int | None = None


@dataclass(frozen=True)
class TopUpRequest:
    user_id: int
    amount: Decimal
    order_id: str
    payment_id: str
    signature: str


def wallet_snapshot(wallet: Wallet) -> dict[str, Any]:
    return {
        "id": wallet.id,
        "user_id": wallet.user_id,
        "balance": str(wallet.balance),
        "currency": wallet.currency,
    }


def validate_amount(amount: Decimal, maximum: Decimal) -> None:
    """
    Amounts must be positive, at most ``maximum`` and carry no more than two
    decimal places.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise ValidationError("Amount must be a decimal number", details={"amount": str(amount)})
    if amount <= 0:
        raise ValidationError("Amount must be positive", details={"amount": str(amount)})
    if amount > maximum:
        raise ValidationError(
            f"Amount exceeds maximum of {maximum}",
            details={"amount": str(amount), "maximum": str(maximum)},
        )
    if amount.as_tuple().exponent < -2:
        raise ValidationError(
            "Amount must have at most two decimal places",
            details={"amount": str(amount)},
        )


class ProcessPayout(DomainOperation[PayoutRequest]):
    """Moves funds from a merchant's wallet to a staff member's wallet."""

    name = "process_payout"

    def validate(self, request: PayoutRequest) -> None:
        validate_amount(request.amount, MAX_PAYOUT_AMOUNT)
        if request.merchant_id == request.recipient_id:
            raise ValidationError("Cannot pay out to the same user")

    def execute(self, uow: UnitOfWork, request: PayoutRequest) -> OperationResult:
        users = UserRepository(uow.session)
        merchant = users.get_with_role(request.merchant_id, Role.MERCHANT)
        recipient = users.get_with_role(request.recipient_id, Role.STAFF)

        wallets = WalletRepository(uow.session)
        source, target = wallets.lock_pair(merchant.id, recipient.id)
        transfer_id = wallets.transfer(
            source,
            target,
            request.amount,
            TransactionType.PAYOUT,
            f"Payout from merchant {merchant.id}",
        )

        amount = str(request.amount)
        return OperationResult(
            entity_name="payout",
            entity={
                "reference": transfer_id,
                "merchant_id": merchant.id,
                "recipient_id": recipient.id,
                "amount": amount,
                "currency": source.currency,
                "merchant_balance": str(source.balance),
            },
            message="Payout processed",
            side_effects=(
                SideEffectDescriptor.audit(
                    user_id=merchant.id,
                    role=Role.MERCHANT.value,
                    action="process_payout",
                    details={
                        "recipient_id": recipient.id,
                        "amount": amount,
                        "reference": transfer_id,
                    },
                ),
                SideEffectDescriptor.notify(
                    user_id=recipient.id,
                    notification_type=NotificationType.PAYOUT_RECEIVED,
                    message_key="payout.received",
                    message_params={"amount": amount, "currency": source.currency},
                    role=Role.STAFF.value,
                    module=MODULE_WALLET,
                ),
                SideEffectDescriptor.broadcast(
                    channel=f"merchant:{merchant.id}",
                    event_name=SocketEvent.PAYOUT_PROCESSED,
                    payload={
                        "reference": transfer_id,
                        "recipient_id": recipient.id,
                        "amount": amount,
                    },
                ),
            ),
        )


class DistributeTip(DomainOperation[TipRequest]):
    name = "tip_distribute"

    def validate(self, request: TipRequest) -> None:
        validate_amount(request.amount, MAX_TIP_AMOUNT)

    def execute(self, uow: UnitOfWork, request: TipRequest) -> OperationResult:
        users = UserRepository(uow.session)
        customer = users.get_with_role(request.customer_id, Role.CUSTOMER)
        staff = users.get_with_role(request.staff_id, Role.STAFF)

        reference = None
        if request.booking_id is not None:
            booking = BookingRepository(uow.session).get_by_id(request.booking_id)
            if not booking:
                raise NotFoundError("Booking", request.booking_id)
            if booking.customer_id != customer.id:
                raise DomainRuleViolation(
                    "Booking does not belong to this customer",
                    details={"booking_id": booking.id, "customer_id": customer.id},
                )
            reference = booking.reference

        wallets = WalletRepository(uow.session)
        source, target = wallets.lock_pair(customer.id, staff.id)
        transfer_id = wallets.transfer(
            source,
            target,
            request.amount,
            TransactionType.TIP,
            f"Tip from customer {customer.id}",
        )

        amount = str(request.amount)
        return OperationResult(
            entity_name="tip",
            entity={
                "reference": transfer_id,
                "customer_id": customer.id,
                "staff_id": staff.id,
                "booking_id": request.booking_id,
                "amount": amount,
                "currency": source.currency,
                "customer_balance": str(source.balance),
            },
            message="Tip distributed",
            side_effects=(
                SideEffectDescriptor.audit(
                    user_id=customer.id,
                    role=Role.CUSTOMER.value,
                    action="tip_distribute",
                    details={
                        "staff_id": staff.id,
                        "booking_id": request.booking_id,
                        "amount": amount,
                        "reference": transfer_id,
                    },
                ),
                SideEffectDescriptor.notify(
                    user_id=staff.id,
                    notification_type=NotificationType.TIP_RECEIVED,
                    message_key="tip.received",
                    message_params={
                        "amount": amount,
                        "currency": source.currency,
                        "reference": reference,
                    },
                    role=Role.STAFF.value,
                    module=MODULE_WALLET,
                ),
                SideEffectDescriptor.broadcast(
                    channel=f"staff:{staff.id}",
                    event_name=SocketEvent.TIP_RECEIVED,
                    payload={"reference": transfer_id, "amount": amount},
                ),
                SideEffectDescriptor.award_points(
                    user_id=customer.id,
                    action="tip_given",
                    points=GAMIFICATION_ACTIONS[Role.CUSTOMER]["tip_given"],
                    metadata={"staff_id": staff.id, "amount": amount},
                ),
            ),
        )


class TopUpWallet(DomainOperation[TopUpRequest]):
    """
    Credits a customer wallet after the payment provider confirms the payment.

    The provider payment id is the transaction reference: applying the same
    payment to the same wallet again is a no-op.
    """

    name = "wallet_top_up"

    def __init__(self, verifier: PaymentVerifier):
        self.verifier = verifier

    def validate(self, request: TopUpRequest) -> None:
        validate_amount(request.amount, MAX_TOP_UP_AMOUNT)
        for field_name in ("order_id", "payment_id", "signature"):
            if not getattr(request, field_name):
                raise ValidationError(f"{field_name} is required", details={"field": field_name})

    def execute(self, uow: UnitOfWork, request: TopUpRequest) -> OperationResult:
        customer = UserRepository(uow.session).get_with_role(request.user_id, Role.CUSTOMER)

        self.verifier.verify(request.order_id, request.payment_id, request.signature)
        paid = self.verifier.order_amount(request.order_id)
        if paid != request.amount:
            raise PaymentVerificationError(
                "Order amount does not match requested amount",
                details={"order_amount": str(paid), "requested": str(request.amount)},
            )

        wallets = WalletRepository(uow.session)
        wallet = wallets.lock_wallet(customer.id)

        existing = wallets.get_transaction_by_reference(request.payment_id)
        if existing:
            if existing.wallet_id != wallet.id:
                raise IdempotencyConflictError(
                    "Payment already applied to another wallet",
                    details={"payment_id": request.payment_id},
                )
            logger.info(
                "Top-up already applied. wallet_id=%s payment_id=%s",
                wallet.id,
                request.payment_id,
            )
            return OperationResult(
                entity_name="wallet",
                entity=wallet_snapshot(wallet),
                message="Top-up already applied",
            )

        wallets.credit(
            wallet,
            request.amount,
            TransactionType.TOP_UP,
            "Wallet top-up",
            request.payment_id,
        )

        amount = str(request.amount)
        return OperationResult(
            entity_name="wallet",
            entity=wallet_snapshot(wallet),
            message="Wallet topped up",
            side_effects=(
                SideEffectDescriptor.audit(
                    user_id=customer.id,
                    role=Role.CUSTOMER.value,
                    action="wallet_top_up",
                    details={
                        "amount": amount,
                        "order_id": request.order_id,
                        "payment_id": request.payment_id,
                    },
                ),
                SideEffectDescriptor.notify(
                    user_id=customer.id,
                    notification_type=NotificationType.WALLET_TOPPED_UP,
                    message_key="wallet.topped_up",
                    message_params={"amount": amount, "currency": wallet.currency},
                    role=Role.CUSTOMER.value,
                    module=MODULE_WALLET,
                ),
                SideEffectDescriptor.award_points(
                    user_id=customer.id,
                    action="wallet_topped_up",
                    points=GAMIFICATION_ACTIONS[Role.CUSTOMER]["wallet_topped_up"],
                    metadata={"payment_id": request.payment_id},
                ),
            ),
        )
