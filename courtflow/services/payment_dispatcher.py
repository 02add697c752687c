import logging
from typing import Union

from courtflow.core.config import settings
from courtflow.core.errors import BackendError, DispatchFailed, UnsupportedPaymentMethod
from courtflow.schemas.booking import Booking
from courtflow.schemas.payments import InlineOutcome, PaymentIntent, RedirectOutcome
from courtflow.services.backend_client import BackendClient
from courtflow.services.flow_storage import CURRENT_BOOKING, FlowStorage
from courtflow.services.hold_store import HoldStore
from courtflow.services.navigation_guard import FlowIntent
from courtflow.services.payos_client import PayOSProvider
from courtflow.services.providers import GenericProvider, PaymentProvider
from courtflow.services.vnpay_client import VNPayProvider

logger = logging.getLogger(__name__)

# Where each provider sends the customer back to (pages that call our return endpoints)
RETURN_PATHS = {
    "payos": ("/booking/payos-return", "/booking/payos-return"),
    "vnpay": ("/booking/vnpay-return", "/booking/vnpay-return"),
}


def offline_payment_methods() -> set[str]:
    return {m.strip() for m in settings.OFFLINE_PAYMENT_METHODS.split(",") if m.strip()}


def build_providers() -> dict[str, PaymentProvider]:
    return {p.name: p for p in (PayOSProvider(), VNPayProvider(), GenericProvider())}


DispatchOutcome = Union[InlineOutcome, RedirectOutcome]


class PaymentDispatcher:
    def __init__(
        self,
        storage: FlowStorage,
        hold_store: HoldStore,
        backend: BackendClient,
        intent: FlowIntent,
        providers: dict[str, PaymentProvider] | None = None,
        offline_methods: set[str] | None = None,
        client_base_url: str | None = None,
    ):
        self.storage = storage
        self.hold_store = hold_store
        self.backend = backend
        self.intent = intent
        self.providers = providers if providers is not None else build_providers()
        self.offline_methods = offline_methods if offline_methods is not None else offline_payment_methods()
        self.client_base_url = settings.CLIENT_BASE_URL if client_base_url is None else client_base_url

    @property
    def external_methods(self) -> set[str]:
        return set(RETURN_PATHS) & set(self.providers)

    @property
    def payment_methods(self) -> set[str]:
        return self.offline_methods | self.external_methods

    def is_external(self, payment_method: str) -> bool:
        return payment_method in self.external_methods

    def dispatch(self, booking: Booking, payment_method: str) -> DispatchOutcome:
        if payment_method in self.offline_methods:
            return self._complete_inline(booking, payment_method)
        if self.is_external(payment_method):
            return self._redirect(booking, self.providers[payment_method])
        raise UnsupportedPaymentMethod(f"Payment method '{payment_method}' is not supported")

    def _complete_inline(self, booking: Booking, payment_method: str) -> InlineOutcome:
        booking = booking.model_copy(update={"paymentStatus": "pending", "paymentMethod": payment_method})
        self.storage.write(CURRENT_BOOKING, booking)
        self.hold_store.purge()
        self.intent.clear()
        logger.info("Booking %s completed inline with %s", booking.bookingId, payment_method)
        return InlineOutcome(booking=booking, paymentStatus="pending")

    def _redirect(self, booking: Booking, provider: PaymentProvider) -> RedirectOutcome:
        return_path, cancel_path = RETURN_PATHS[provider.name]
        return_url = f"{self.client_base_url}{return_path}"
        cancel_url = f"{self.client_base_url}{cancel_path}"

        try:
            if booking.checkoutUrl and booking.providerRef and booking.paymentMethod == provider.name:
                # Booking creation already handed us a checkout link
                intent = PaymentIntent(
                    provider=provider.name,
                    providerRef=booking.providerRef,
                    amount=booking.totalPrice,
                    returnUrl=return_url,
                    cancelUrl=cancel_url,
                    checkoutUrl=booking.checkoutUrl,
                )
            else:
                intent = provider.create_checkout(self.backend, booking, return_url, cancel_url)
        except (BackendError, ValueError) as e:
            self.intent.clear()
            logger.error("Checkout creation with %s failed for booking %s: %s", provider.name, booking.bookingId, e)
            raise DispatchFailed(
                str(e) or f"Could not start {provider.name} payment",
                details={"bookingId": booking.bookingId, "retry": True},
            )

        # Persist the reference first so a later return visit can find this booking after a reload
        booking = booking.model_copy(update={
            "provider": provider.name,
            "providerRef": intent.providerRef,
            "checkoutUrl": intent.checkoutUrl,
            "paymentMethod": provider.name,
        })
        self.storage.write(CURRENT_BOOKING, booking)
        self.intent.begin_redirect()
        logger.info("Redirecting booking %s to %s (ref %s)", booking.bookingId, provider.name, intent.providerRef)
        return RedirectOutcome(url=intent.checkoutUrl, replace=True, intent=intent, booking=booking)
