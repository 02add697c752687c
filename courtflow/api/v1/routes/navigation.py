from fastapi import APIRouter, Depends

from courtflow.api.deps import get_flow
from courtflow.schemas.payments import GuardInstruction
from courtflow.services.reservation_flow import ReservationFlow

router = APIRouter(prefix="/flow/navigation", tags=["navigation"])


@router.post("/unload", response_model=GuardInstruction)
def unload(flow: ReservationFlow = Depends(get_flow)):
    return flow.on_unload()


@router.post("/hidden", response_model=GuardInstruction)
async def hidden(flow: ReservationFlow = Depends(get_flow)):
    """Answers after the grace delay; a `visible` event meanwhile cancels the release."""
    return await flow.on_hidden()


@router.post("/visible", response_model=GuardInstruction)
def visible(flow: ReservationFlow = Depends(get_flow)):
    return flow.on_visible()


@router.post("/back", response_model=GuardInstruction)
def back(flow: ReservationFlow = Depends(get_flow)):
    return flow.on_back()


@router.post("/leave", response_model=GuardInstruction)
def leave(flow: ReservationFlow = Depends(get_flow)):
    return flow.confirm_leave()


@router.post("/stay", response_model=GuardInstruction)
def stay(flow: ReservationFlow = Depends(get_flow)):
    return flow.decline_leave()
