import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status

from .errors import Forbidden, NotFound
from .models import BookingStatus
from .notifications import recipient_key, serialize
from .rbac import Role, require_role
from .schemas import (
    AcceptRequest,
    AssignRequest,
    BookingResponse,
    CompletionRequestResponse,
    CreateBookingRequest,
    EarningEntry,
    EarningsResponse,
    NotificationResponse,
    ReconcilePaymentRequest,
    ReconcileResponse,
    UpsertWorker,
    VerifyCompletionRequest,
    WorkerResponse,
)
from .security import Actor, actor_from_token, get_current_actor

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ctx(request: Request):
    return request.app.state.ctx


def _can_view(booking, actor: Actor) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.CUSTOMER:
        return booking.customer_id == actor.id
    if actor.role == Role.WORKER:
        # broadcast candidates see the job before accepting it
        return booking.worker_id == actor.id or booking.booking_status == BookingStatus.PENDING
    return False


# ---- bookings ----

@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(data: CreateBookingRequest, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.payments.create_booking(data, actor)
    return BookingResponse.from_booking(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.store.get(booking_id)
    if not _can_view(booking, actor):
        raise Forbidden("Access forbidden for this booking")
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str,
    data: AcceptRequest,
    actor: Actor = Depends(get_current_actor),
    ctx=Depends(get_ctx),
):
    booking = await ctx.dispatcher.accept(booking_id, actor, data.expected_status)
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.dispatcher.reject(booking_id, actor)
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/assign", response_model=BookingResponse)
async def assign_booking(
    booking_id: str,
    data: AssignRequest,
    actor: Actor = Depends(get_current_actor),
    ctx=Depends(get_ctx),
):
    booking = await ctx.dispatcher.assign(booking_id, data.worker_id, actor)
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/dispatch")
async def dispatch_booking(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    recipients = await ctx.dispatcher.redispatch(booking_id, actor)
    return {"booking_id": booking_id, "recipients": recipients}


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_job(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.machine.run(booking_id, actor, "start")
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/request-completion", response_model=CompletionRequestResponse)
async def request_completion(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    result = await ctx.otp.request_completion(booking_id, actor)
    return CompletionRequestResponse(
        booking_id=result.booking.booking_id,
        delivered=result.delivered,
        code_if_undelivered=result.code_if_undelivered,
    )


@router.post("/bookings/{booking_id}/verify-completion", response_model=BookingResponse)
async def verify_completion(
    booking_id: str,
    data: VerifyCompletionRequest,
    actor: Actor = Depends(get_current_actor),
    ctx=Depends(get_ctx),
):
    booking = await ctx.otp.verify(booking_id, data.code, actor)
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/override-completion", response_model=BookingResponse)
async def override_completion(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.otp.override_completion(booking_id, actor)
    return BookingResponse.from_booking(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(booking_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    booking = await ctx.machine.run(booking_id, actor, "cancel")
    return BookingResponse.from_booking(booking)


# ---- payments ----

@router.post("/payments/reconcile", response_model=ReconcileResponse)
async def reconcile_payment(
    data: ReconcilePaymentRequest,
    response: Response,
    actor: Actor = Depends(get_current_actor),
    ctx=Depends(get_ctx),
):
    result = await ctx.payments.reconcile(data.order_id, data.booking, actor)
    if result.warning is not None:
        response.status_code = result.warning.status_code
    return ReconcileResponse(
        booking=BookingResponse.from_booking(result.booking),
        created=result.created,
        warning=result.warning.message if result.warning else None,
    )


# ---- notifications ----

@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    return [NotificationResponse(**serialize(n)) for n in await ctx.notifications.unread(actor)]


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(notification_id: int, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    notification = await ctx.notifications.mark_read(notification_id, actor)
    return NotificationResponse(**serialize(notification))


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket):
    ctx = websocket.app.state.ctx
    token = websocket.query_params.get("token")
    try:
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
        actor = actor_from_token(token, ctx.settings.jwt_secret, ctx.settings.jwt_algorithm)
    except HTTPException as e:
        logger.info("[booking-service] rejected notification socket: %s", e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    recipient_id = recipient_key(actor.id, actor.role)
    ctx.connections.connect(recipient_id, websocket)
    try:
        await ctx.notifications.replay_unread(actor)
        while True:
            # clients only listen; inbound frames are keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        ctx.connections.disconnect(recipient_id, websocket)


# ---- workers ----

@router.put("/workers/{worker_id}", response_model=WorkerResponse)
async def upsert_worker(
    worker_id: str,
    data: UpsertWorker,
    actor: Actor = Depends(get_current_actor),
    ctx=Depends(get_ctx),
):
    is_verified = data.is_verified
    if actor.role == Role.WORKER and actor.id == worker_id:
        # workers maintain their own skills and availability, not verification
        existing = await ctx.dispatcher.get_worker(worker_id)
        is_verified = bool(existing and existing.is_verified)
    else:
        require_role(actor, [Role.ADMIN])

    worker = await ctx.dispatcher.upsert_worker(worker_id, data.services, data.is_available, is_verified)
    return WorkerResponse.model_validate(worker)


@router.get("/workers/{worker_id}", response_model=WorkerResponse)
async def get_worker(worker_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    if not (actor.role == Role.ADMIN or (actor.role == Role.WORKER and actor.id == worker_id)):
        raise Forbidden("Access forbidden for this role")
    worker = await ctx.dispatcher.get_worker(worker_id)
    if worker is None:
        raise NotFound("Worker not found")
    return WorkerResponse.model_validate(worker)


@router.get("/workers/{worker_id}/earnings", response_model=EarningsResponse)
async def worker_earnings(worker_id: str, actor: Actor = Depends(get_current_actor), ctx=Depends(get_ctx)):
    summary = await ctx.otp.earnings(worker_id, actor)
    return EarningsResponse(
        worker_id=summary.worker_id,
        total=summary.total,
        entries=[EarningEntry.model_validate(e) for e in summary.entries],
    )
