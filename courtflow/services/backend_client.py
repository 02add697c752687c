import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from courtflow.core.config import settings
from courtflow.core.errors import BackendError
from courtflow.schemas.booking import Booking, CustomerInfo, Hold, TimeSlot

logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    base_url: str           # e.g. https://api.courts.example.vn
    token: str = ""         # bearer token forwarded on every call
    timeout: int = 15


def _message_from(data: Any) -> str:
    """Backend envelopes carry `message` and sometimes `error` (str or list)."""
    if not isinstance(data, dict):
        return ""
    err = data.get("error")
    if isinstance(err, list) and err:
        return "; ".join(str(e) for e in err)
    msg = data.get("message") or err or data.get("detail")
    return str(msg) if msg else ""


def unwrap(data: Any) -> dict:
    """Pull the payload out of `{"success", "message", "data"|"booking"}` envelopes."""
    if not isinstance(data, dict):
        return {}
    inner = data.get("data")
    if isinstance(inner, dict):
        return inner
    if isinstance(data.get("booking"), dict):
        return {"booking": data["booking"], **{k: v for k, v in data.items() if k != "booking"}}
    return data


def parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # epoch millis from JS backends
        return datetime.fromtimestamp(value / 1000 if value > 10**11 else value, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _slot_from_backend(s: dict, fallback_court: str, fallback_date: str) -> TimeSlot:
    return TimeSlot(
        courtId=str(s.get("courtId") or fallback_court or ""),
        date=str(s.get("date") or fallback_date or ""),
        start=str(s.get("start") or s.get("startTime") or ""),
        end=str(s.get("end") or s.get("endTime") or ""),
        price=int(s.get("price") or 0),
    )


def _created_at(value: Any) -> str | None:
    if isinstance(value, (int, float)):
        created = parse_timestamp(value)
        return created.isoformat() if created else None
    return str(value) if value else None


def booking_from_backend(data: dict) -> Booking:
    """Normalize the backend's booking shape (`_id`/`bookingCode`/`timeSlots`/`phoneNumber`...)."""
    court_ids = [str(c) for c in (data.get("courtIds") or ([data["courtId"]] if data.get("courtId") else []))]
    date = str(data.get("date") or "")
    slots = [
        _slot_from_backend(s, court_ids[0] if court_ids else "", date)
        for s in (data.get("slots") or data.get("timeSlots") or [])
    ]
    ci = data.get("customerInfo") or None
    customer = None
    if isinstance(ci, dict):
        customer = CustomerInfo(
            fullName=ci.get("fullName", ""),
            phone=ci.get("phone") or ci.get("phoneNumber") or "",
            email=ci.get("email", ""),
            notes=ci.get("notes", "") or "",
        )
    payment_status = str(data.get("paymentStatus") or "pending").lower()
    if payment_status not in ("pending", "paid", "failed", "refunded", "cancelled"):
        payment_status = "pending"
    status = str(data.get("status") or "pending").lower()
    if status not in ("pending", "confirmed", "cancelled"):
        status = "pending"
    venue = data.get("venueId") or data.get("venue") or ""
    if isinstance(venue, dict):
        venue = venue.get("_id") or venue.get("id") or ""
    return Booking(
        bookingId=str(data.get("bookingId") or data.get("_id") or data.get("id") or ""),
        bookingRef=str(data.get("bookingRef") or data.get("bookingCode") or ""),
        venueId=str(venue),
        courtIds=court_ids,
        date=date,
        slots=slots,
        totalPrice=int(data.get("totalPrice") or 0),
        customerInfo=customer,
        paymentMethod=str(data.get("paymentMethod") or ""),
        paymentStatus=payment_status,
        status=status,
        holdId=data.get("holdId"),
        checkoutUrl=data.get("checkoutUrl") or data.get("paymentUrl"),
        providerRef=(str(data["paymentRef"]) if data.get("paymentRef") else None),
        createdAt=_created_at(data.get("createdAt")),
    )


class BackendClient:
    """Thin JSON client for the backend booking API."""

    def __init__(self, cfg: BackendConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.http = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.cfg.token:
            headers["Authorization"] = f"Bearer {self.cfg.token}"
        return headers

    def send(self, method: str, path: str, payload: dict | None = None, params: dict | None = None) -> tuple[int, dict]:
        url = f"{self.cfg.base_url}{path}"
        try:
            r = self.http.request(
                method=method.upper(), url=url, json=payload, params=params,
                headers=self._headers(), timeout=self.cfg.timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Backend unreachable ({method.upper()} {path}): {e}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if not isinstance(data, dict):
            data = {"data": data}
        return r.status_code, data

    def request(self, method: str, path: str, payload: dict | None = None, params: dict | None = None) -> dict:
        status_code, data = self.send(method, path, payload, params)
        if status_code >= 400 or data.get("success") is False:
            msg = _message_from(data) or f"Backend {status_code}"
            raise BackendError(msg, status_code=status_code, payload=data)
        return data

    # ---- holds ----
    def create_hold(self, venue_id: str, slots: list[TimeSlot], court_quantity: int) -> dict:
        payload = {
            "venueId": venue_id,
            "courtIds": list(dict.fromkeys(s.courtId for s in slots)),
            "date": slots[0].date if slots else "",
            "timeSlots": [
                {"courtId": s.courtId, "date": s.date, "startTime": s.start, "endTime": s.end, "price": s.price}
                for s in slots
            ],
            "courtQuantity": court_quantity,
        }
        return unwrap(self.request("POST", "/api/v1/bookings/hold", payload))

    def verify_hold(self, hold_id: str) -> dict:
        return unwrap(self.request("GET", f"/api/v1/bookings/hold/{hold_id}"))

    def release_hold(self, hold_id: str) -> dict:
        return unwrap(self.request("POST", f"/api/v1/bookings/{hold_id}/release"))

    # ---- bookings ----
    def create_booking(self, hold: Hold, customer_info: CustomerInfo, payment_method: str) -> dict:
        payload = {
            "holdId": hold.holdId,
            "venueId": hold.venueId,
            "courtIds": hold.court_ids,
            "date": hold.slots[0].date if hold.slots else "",
            "timeSlots": [
                {"courtId": s.courtId, "date": s.date, "startTime": s.start, "endTime": s.end, "price": s.price}
                for s in hold.slots
            ],
            "courtQuantity": hold.courtQuantity,
            "totalPrice": hold.totalPrice,
            "paymentMethod": payment_method,
            "customerInfo": {
                "fullName": customer_info.fullName,
                "email": customer_info.email,
                "phoneNumber": customer_info.phone,
            },
            "notes": customer_info.notes or "",
        }
        return unwrap(self.request("POST", "/api/v1/bookings", payload))

    def get_booking(self, booking_id: str) -> dict:
        return unwrap(self.request("GET", f"/api/v1/bookings/{booking_id}"))

    def get_payment_transaction(self, payment_ref: str) -> dict:
        return unwrap(self.request("GET", f"/api/v1/payment/{payment_ref}"))

    # ---- providers (the backend holds provider credentials) ----
    def create_provider_payment(self, provider: str, payload: dict) -> dict:
        return unwrap(self.request("POST", f"/api/v1/payments/{provider}/create", payload))

    def payment_status(self, provider: str, provider_ref: str) -> tuple[int, dict]:
        """Returns (http status, body). 202 means the provider still reports the payment as processing."""
        return self.send("GET", f"/api/v1/payments/{provider}/status/{provider_ref}")

    def cancel_provider_payment(self, provider: str, provider_ref: str, reason: str) -> dict:
        return unwrap(self.request("POST", f"/api/v1/payments/{provider}/{provider_ref}/cancel", {"reason": reason}))


def default_backend_client() -> BackendClient:
    return BackendClient(BackendConfig(
        base_url=settings.BACKEND_API_URL,
        token=settings.BACKEND_API_TOKEN,
        timeout=settings.BACKEND_TIMEOUT,
    ))
