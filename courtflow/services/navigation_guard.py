"""
Keeps an active hold from being silently lost when the user leaves the page.

Every handler consults the session's ``FlowIntent`` first: while a payment
redirect is in progress nothing is released and no prompt is shown.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable

from courtflow.core.config import settings
from courtflow.schemas.payments import GuardInstruction

logger = logging.getLogger(__name__)

LEAVE_PROMPT = "Leaving this page will release your hold on the selected courts. Leave anyway?"
UNLOAD_PROMPT = "Your reservation is still being held. Are you sure you want to leave?"


class FlowIntent:
    """Single owner of the "redirect in progress" flag for one flow session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._redirect_in_progress = False

    @property
    def redirect_in_progress(self) -> bool:
        with self._lock:
            return self._redirect_in_progress

    def begin_redirect(self) -> None:
        with self._lock:
            self._redirect_in_progress = True

    def clear(self) -> None:
        with self._lock:
            self._redirect_in_progress = False


class NavigationGuard:
    def __init__(
        self,
        intent: FlowIntent,
        has_active_hold: Callable[[], bool],
        release_hold: Callable[[], bool],
        grace_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.intent = intent
        self.has_active_hold = has_active_hold
        self.release_hold = release_hold
        self.grace_seconds = settings.VISIBILITY_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.sleep = sleep
        self.armed = False
        self._hidden = False

    def _release(self, reason: str) -> bool:
        try:
            released = self.release_hold()
        except Exception as e:
            # Never block navigation on a release problem; the backend expires holds itself.
            logger.warning("Hold release on %s failed: %s", reason, e)
            return False
        if released:
            logger.info("Hold released on %s", reason)
        return released

    def arm(self) -> GuardInstruction:
        """Called when a hold becomes active: ask the page for one extra history entry."""
        self.armed = True
        return GuardInstruction(pushSentinel=True)

    def disarm(self) -> None:
        self.armed = False
        self._hidden = False

    def on_unload(self) -> GuardInstruction:
        if self.intent.redirect_in_progress:
            return GuardInstruction()
        if not self.has_active_hold():
            return GuardInstruction()
        return GuardInstruction(prompt=True, message=UNLOAD_PROMPT)

    async def on_hidden(self) -> bool:
        """Release after the grace delay unless the page came back or a redirect started meanwhile."""
        if self.intent.redirect_in_progress:
            return False
        self._hidden = True
        await self.sleep(self.grace_seconds)
        if self.intent.redirect_in_progress or not self._hidden:
            return False
        self._hidden = False
        # Release talks to the DB and the backend synchronously; keep it off the event loop
        return await asyncio.to_thread(self._release, "visibility change")

    def on_visible(self) -> None:
        self._hidden = False

    def on_back(self) -> GuardInstruction:
        if self.intent.redirect_in_progress or not self.armed or not self.has_active_hold():
            return GuardInstruction(navigate="back")
        return GuardInstruction(prompt=True, message=LEAVE_PROMPT)

    def confirm_leave(self, navigate_to: str = "back") -> GuardInstruction:
        released = self._release("back navigation")
        self.disarm()
        return GuardInstruction(release=released, navigate=navigate_to)

    def decline_leave(self) -> GuardInstruction:
        return self.arm()
