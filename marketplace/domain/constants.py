# marketplace/domain/constants.py

import os
from decimal import Decimal
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    MERCHANT = "merchant"
    CUSTOMER = "customer"
    STAFF = "staff"
    DRIVER = "driver"


class TransactionType(str, Enum):
    PAYOUT = "payout"
    TIP = "tip"
    TOP_UP = "top_up"


class NotificationType:
    CHECK_IN_PROCESSED = "CHECK_IN_PROCESSED"
    BOOKING_STATUS_UPDATED = "BOOKING_STATUS_UPDATED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    PAYOUT_RECEIVED = "PAYOUT_RECEIVED"
    TIP_RECEIVED = "TIP_RECEIVED"
    WALLET_TOPPED_UP = "WALLET_TOPPED_UP"


class SocketEvent:
    BOOKING_STATUS_UPDATED = "staff:mtables:status_updated"
    BOOKING_CANCELLED = "customer:mtables:booking_cancelled"
    PAYOUT_PROCESSED = "payout:processed"
    TIP_RECEIVED = "tip:received"


MODULE_MTABLES = "mtables"
MODULE_WALLET = "wallet"


# Audit actions each role may record.
AUDIT_ACTIONS: dict[Role, frozenset[str]] = {
    Role.ADMIN: frozenset({"configuration_update"}),
    Role.MERCHANT: frozenset({"process_payout", "configure_payout_settings"}),
    Role.CUSTOMER: frozenset({"booking_cancel", "tip_distribute", "wallet_top_up"}),
    Role.STAFF: frozenset({"booking_status_update", "booking_check_in"}),
    Role.DRIVER: frozenset({"payout_request"}),
}


# Gamification actions and their point values, per role.
GAMIFICATION_ACTIONS: dict[Role, dict[str, int]] = {
    Role.STAFF: {
        "booking_checked_in": 10,
        "booking_status_updated": 5,
    },
    Role.CUSTOMER: {
        "tip_given": 5,
        "wallet_topped_up": 2,
    },
    Role.MERCHANT: {},
    Role.DRIVER: {},
    Role.ADMIN: {},
}

MAX_POINTS_PER_DAY = int(os.getenv("POINTS_MAX_PER_DAY", "500"))
POINT_EXPIRY_DAYS = int(os.getenv("POINTS_EXPIRY_DAYS", "365"))

SUPPORTED_LANGUAGES = ("en", "fr")
DEFAULT_LANGUAGE = "en"
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")

MONEY_QUANTUM = Decimal("0.01")
MAX_PAYOUT_AMOUNT = Decimal("10000.00")
MAX_TIP_AMOUNT = Decimal("500.00")
MAX_TOP_UP_AMOUNT = Decimal("5000.00")

IDEMPOTENCY_KEY_MAX_LENGTH = 128
