import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from courtflow.api.deps import get_flow
from courtflow.schemas.booking import CountdownOut, HoldOut, HoldRequest
from courtflow.services.reservation_flow import ReservationFlow

router = APIRouter(prefix="/flow", tags=["holds"])


@router.post("/hold", response_model=HoldOut)
def acquire_hold(body: HoldRequest, flow: ReservationFlow = Depends(get_flow)):
    return flow.acquire_hold(body.venueId, body.slots, body.courtQuantity)


@router.get("/hold", response_model=HoldOut)
def current_hold(verify: bool = False, flow: ReservationFlow = Depends(get_flow)):
    """Recover the session's hold, e.g. after a page reload. `verify=true` also asks the backend."""
    return flow.current_hold(verify=verify)


@router.delete("/hold")
def release_hold(flow: ReservationFlow = Depends(get_flow)):
    return {"released": flow.release()}


# sendBeacon can only POST
@router.post("/hold/release")
def release_hold_beacon(flow: ReservationFlow = Depends(get_flow)):
    return {"released": flow.release()}


@router.get("/countdown", response_model=CountdownOut)
def countdown(flow: ReservationFlow = Depends(get_flow)):
    return flow.countdown()


def _sse(event: str, data: CountdownOut) -> str:
    return f"event: {event}\ndata: {json.dumps(data.model_dump(mode='json'))}\n\n"


@router.get("/countdown/stream")
def countdown_stream(request: Request, flow: ReservationFlow = Depends(get_flow)):
    first = flow.countdown()
    countdown = flow.countdowns.get(flow.session_id)

    async def events():
        if countdown is None or first.state != "running":
            yield _sse("expired" if first.state == "expired" else "stopped", first)
            return
        async for value in countdown.ticks():
            if await request.is_disconnected():
                break
            snapshot = flow.snapshot(countdown, value)
            if snapshot.state == "running":
                yield _sse("tick", snapshot)
            else:
                yield _sse(snapshot.state, snapshot)
                break

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})
