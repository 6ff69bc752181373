from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Header, Request, WebSocket
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketDisconnect
from sqlalchemy.orm import Session

from marketplace.infrastructure.db.session import SessionLocal
from marketplace.infrastructure.db.unit_of_work import PersistenceGateway
from marketplace.application.orchestrator import Orchestrator, OrchestratorResponse
from marketplace.application.fan_out import SideEffectFanOut
from marketplace.application.booking_operations import (
    BookingStatusRequest,
    CancelBookingRequest,
    CancelBooking,
    CheckInBooking,
    CheckInRequest,
    UpdateBookingStatus,
    booking_snapshot,
)
from marketplace.application.wallet_operations import (
    DistributeTip,
    PayoutRequest,
    ProcessPayout,
    TipRequest,
    TopUpRequest,
    TopUpWallet,
    wallet_snapshot,
)
from marketplace.api.schemas.schemas import (
    AuditLogResponse,
    BookingResponse,
    BookingStatusBody,
    CancelBookingBody,
    CheckInBody,
    NotificationResponse,
    PayoutBody,
    PointsSummaryResponse,
    TipBody,
    TopUpBody,
    WalletResponse,
)
from marketplace.domain.constants import IDEMPOTENCY_KEY_MAX_LENGTH
from marketplace.domain.exceptions import NotFoundError
from marketplace.infrastructure.payments.razorpay_gateway import RazorpayPaymentVerifier
from marketplace.infrastructure.repositories.booking_repository import BookingRepository
from marketplace.infrastructure.repositories.wallet_repository import WalletRepository
from marketplace.infrastructure.services.audit_service import AuditLogService, is_valid_ip_address
from marketplace.infrastructure.services.broadcast_service import connection_manager
from marketplace.infrastructure.services.notification_service import NotificationService
from marketplace.infrastructure.services.points_service import PointsService


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_gateway() -> PersistenceGateway:
    return PersistenceGateway()


def build_fan_out(session: Session) -> SideEffectFanOut:
    return SideEffectFanOut(
        audit=AuditLogService(session),
        notifications=NotificationService(session),
        broadcast=connection_manager,
        points=PointsService(session),
    )


def get_orchestrator(gateway: PersistenceGateway = Depends(get_gateway)) -> Orchestrator:
    return Orchestrator(gateway, build_fan_out)


def get_payment_verifier() -> RazorpayPaymentVerifier:
    return RazorpayPaymentVerifier()


def _client_ip(request: Request) -> str | None:
    # Test clients and some proxies report hostnames rather than addresses.
    host = request.client.host if request.client else None
    if host and is_valid_ip_address(host):
        return host
    return None


def _respond(response: OrchestratorResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.get("/health")
def health():
    return {"message": "Marketplace write path is running"}


# -----------------------------
# Bookings
# -----------------------------
@router.post("/staff/bookings/{booking_id}/check-in")
async def check_in_booking(
    booking_id: int,
    body: CheckInBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.run(
        CheckInBooking(),
        CheckInRequest(booking_id=booking_id, staff_id=body.staff_id),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.patch("/staff/bookings/{booking_id}/status")
async def update_booking_status(
    booking_id: int,
    body: BookingStatusBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.run(
        UpdateBookingStatus(),
        BookingStatusRequest(
            booking_id=booking_id,
            staff_id=body.staff_id,
            status=body.status,
        ),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.post("/customer/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: int,
    body: CancelBookingBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.run(
        CancelBooking(),
        CancelBookingRequest(
            booking_id=booking_id,
            customer_id=body.customer_id,
            reason=body.reason,
        ),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: int, db: Session = Depends(get_db)):
    booking = BookingRepository(db).get_by_id(booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)
    return BookingResponse(**booking_snapshot(booking))


# -----------------------------
# Wallets
# -----------------------------
@router.post("/merchant/{merchant_id}/payouts")
async def process_payout(
    merchant_id: int,
    body: PayoutBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.run(
        ProcessPayout(),
        PayoutRequest(
            merchant_id=merchant_id,
            recipient_id=body.recipient_id,
            amount=body.amount,
        ),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.post("/customer/{customer_id}/tips")
async def distribute_tip(
    customer_id: int,
    body: TipBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.run(
        DistributeTip(),
        TipRequest(
            customer_id=customer_id,
            staff_id=body.staff_id,
            amount=body.amount,
            booking_id=body.booking_id,
        ),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.post("/customer/{customer_id}/wallet/top-ups")
async def top_up_wallet(
    customer_id: int,
    body: TopUpBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    verifier: RazorpayPaymentVerifier = Depends(get_payment_verifier),
):
    response = await orchestrator.run(
        TopUpWallet(verifier),
        TopUpRequest(
            user_id=customer_id,
            amount=body.amount,
            order_id=body.razorpay_order_id,
            payment_id=body.razorpay_payment_id,
            signature=body.razorpay_signature,
        ),
        ip_address=_client_ip(request),
        idempotency_key=idempotency_key,
    )
    return _respond(response)


@router.get("/wallets/{user_id}", response_model=WalletResponse)
def get_wallet(user_id: int, db: Session = Depends(get_db)):
    wallet = WalletRepository(db).get_by_user_id(user_id)
    if not wallet:
        raise NotFoundError("Wallet", user_id)
    return WalletResponse(**wallet_snapshot(wallet))


# -----------------------------
# Side-effect reads
# -----------------------------
@router.get("/audit-logs", response_model=list[AuditLogResponse])
def list_audit_logs(
    user_id: int | None = None,
    action: str | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    logs = AuditLogService(db).list_logs(user_id=user_id, action=action, limit=safe_limit)
    return [
        AuditLogResponse(
            id=item.id,
            user_id=item.user_id,
            role=item.role,
            action=item.action,
            details=item.details,
            ip_address=item.ip_address,
            created_at=item.created_at.isoformat(),
        )
        for item in logs
    ]


@router.get("/users/{user_id}/notifications", response_model=list[NotificationResponse])
def list_notifications(
    user_id: int,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    notifications = NotificationService(db).list_for_user(user_id, limit=safe_limit)
    return [
        NotificationResponse(
            id=item.id,
            notification_type=item.notification_type,
            message_key=item.message_key,
            message=item.message,
            language_code=item.language_code,
            module=item.module,
            is_read=item.is_read,
            created_at=item.created_at.isoformat(),
        )
        for item in notifications
    ]


@router.get("/users/{user_id}/points", response_model=PointsSummaryResponse)
def get_points(user_id: int, db: Session = Depends(get_db)):
    points = PointsService(db)
    start_of_day = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return PointsSummaryResponse(
        user_id=user_id,
        active_points=points.active_total(user_id),
        earned_today=points.points_since(user_id, start_of_day),
        daily_limit=points.max_points_per_day,
    )


# -----------------------------
# Realtime
# -----------------------------
@router.websocket("/ws/{channel}")
async def subscribe(websocket: WebSocket, channel: str):
    await connection_manager.connect(channel, websocket)
    try:
        while True:
            # Inbound frames are ignored; the loop only detects disconnects.
            await websocket.receive_text()
    except WebSocketDisconnect:
        connection_manager.disconnect(channel, websocket)
        logger.info("Websocket unsubscribed. channel=%s", channel)
