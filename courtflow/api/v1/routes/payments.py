from fastapi import APIRouter, Depends, Request

from courtflow.api.deps import get_flow
from courtflow.schemas.payments import ReconciliationResult
from courtflow.services.reservation_flow import ReservationFlow

router = APIRouter(prefix="/flow/payments", tags=["payments"])


@router.get("/payos/return", response_model=ReconciliationResult)
def payos_return(request: Request, flow: ReservationFlow = Depends(get_flow)):
    """Called by the PayOS return page with the query string PayOS appended."""
    return flow.reconcile("payos", dict(request.query_params))


@router.get("/vnpay/return", response_model=ReconciliationResult)
def vnpay_return(request: Request, flow: ReservationFlow = Depends(get_flow)):
    return flow.reconcile("vnpay", dict(request.query_params))


@router.get("/return", response_model=ReconciliationResult)
def generic_return(request: Request, flow: ReservationFlow = Depends(get_flow)):
    return flow.reconcile("generic", dict(request.query_params))
