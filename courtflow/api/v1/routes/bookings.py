from typing import Union

from fastapi import APIRouter, Depends

from courtflow.api.deps import get_flow
from courtflow.schemas.booking import Booking, ConfirmRequest
from courtflow.schemas.payments import DispatchRequest, InlineOutcome, RedirectOutcome
from courtflow.services.reservation_flow import ReservationFlow

router = APIRouter(prefix="/flow/bookings", tags=["bookings"])


@router.post("/confirm", response_model=Union[RedirectOutcome, InlineOutcome])
def confirm(body: ConfirmRequest, flow: ReservationFlow = Depends(get_flow)):
    """Create the booking from the active hold and start payment."""
    return flow.confirm(body.customerInfo, body.paymentMethod)


@router.post("/confirm/cancel")
def cancel_confirm(flow: ReservationFlow = Depends(get_flow)):
    flow.cancel_confirm()
    return {"ok": True}


@router.post("/{booking_id}/dispatch", response_model=Union[RedirectOutcome, InlineOutcome])
def retry_dispatch(booking_id: str, body: DispatchRequest | None = None, flow: ReservationFlow = Depends(get_flow)):
    return flow.retry_dispatch(booking_id, body.paymentMethod if body else None)


@router.get("/current", response_model=Booking)
def current_booking(flow: ReservationFlow = Depends(get_flow)):
    return flow.current_booking()
