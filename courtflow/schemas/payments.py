from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from courtflow.schemas.booking import Booking


class PaymentIntent(BaseModel):
    provider: str
    providerRef: str
    amount: int
    returnUrl: str
    cancelUrl: str
    checkoutUrl: str


class CallbackParams(BaseModel):
    """Provider redirect-back parameters, normalized across providers."""
    provider: str
    providerRef: str = ""
    statusCode: str = ""
    status: str = ""
    cancelled: bool = False
    transactionId: str = ""
    signature: str = ""
    amount: Optional[int] = None
    raw: Dict[str, str] = Field(default_factory=dict)


class Outcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INDETERMINATE = "indeterminate"


class PaymentInfo(BaseModel):
    provider: str
    providerRef: str
    amount: int = 0
    transactionId: str = ""
    statusCode: str = ""
    status: str = ""


class ReconciliationResult(BaseModel):
    outcome: Outcome
    state: Literal["success", "failure"]
    booking: Optional[Booking] = None
    payment: Optional[PaymentInfo] = None
    message: str = ""
    source: Literal["backend", "local", "none"] = "none"
    navigate: str = "/booking/failed"
    # Set when the provider still reports the payment as processing; the page may re-run reconciliation.
    retryAfterSeconds: Optional[int] = None


class InlineOutcome(BaseModel):
    kind: Literal["inline"] = "inline"
    booking: Booking
    paymentStatus: str = "pending"
    navigate: str = "/booking/success"


class RedirectOutcome(BaseModel):
    kind: Literal["redirect"] = "redirect"
    url: str
    # location.replace(), never a push, so back cannot land on a stale reservation step
    replace: bool = True
    intent: PaymentIntent
    booking: Booking


class DispatchRequest(BaseModel):
    # None re-uses the method chosen at confirm time
    paymentMethod: Optional[str] = None


class GuardInstruction(BaseModel):
    release: bool = False
    prompt: bool = False
    message: str = ""
    navigate: Optional[str] = None
    pushSentinel: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
