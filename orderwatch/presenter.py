from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import structlog

from .audio import AudioAlertGenerator
from .model.orderdetails import OrderPayload

logger = structlog.get_logger(__name__)

IDLE = "idle"
VISIBLE = "visible"

ConfirmCallback = Callable[[str], Awaitable[None]]
ShownCallback = Callable[[OrderPayload], Awaitable[None]]


class PresenterError(Exception):
    pass


class ConfirmUnavailable(PresenterError):
    pass


class ConfirmFailed(PresenterError):
    pass


class NotificationPresenter:
    """New-order overlay state: idle <-> visible.

    The presenter plays the alert while visible. Confirmation is delegated
    to the confirm callback; the presenter never writes to the database.
    """

    def __init__(
        self,
        audio: AudioAlertGenerator,
        confirm_order: Optional[ConfirmCallback] = None,
        on_shown: Optional[ShownCallback] = None,
    ) -> None:
        self.audio = audio
        self.confirm_order = confirm_order
        self.on_shown = on_shown
        self.order_data: Optional[OrderPayload] = None
        self.last_error: Optional[str] = None
        self.vibrate_pattern: Optional[Sequence[int]] = None
        # bumped per vibration request so a console vibrates once per order
        self.vibrate_seq = 0

    @property
    def state(self) -> str:
        return VISIBLE if self.order_data is not None else IDLE

    @property
    def is_visible(self) -> bool:
        return self.order_data is not None

    async def show(self, payload: OrderPayload) -> None:
        logger.info("order_notification_shown", order_id=payload.id,
                    order_number=payload.order_number)
        self.order_data = payload
        self.last_error = None
        await self.audio.request_audio_permission()
        await self.audio.play_order_alert()
        if self.on_shown is not None:
            try:
                await self.on_shown(payload)
            except Exception as e:
                logger.error("on_shown_failed", order_id=payload.id,
                             error=str(e))

    def request_vibration(self, pattern: Sequence[int]) -> None:
        self.vibrate_pattern = tuple(pattern)
        self.vibrate_seq += 1

    def dismiss(self) -> None:
        self.audio.stop_alert()
        if self.order_data is not None:
            logger.info("order_notification_dismissed",
                        order_id=self.order_data.id)
        self.order_data = None
        self.last_error = None

    async def confirm(self) -> str:
        if self.confirm_order is None:
            raise ConfirmUnavailable("no confirm action configured")
        if self.order_data is None:
            raise ConfirmUnavailable("no order to confirm")
        payload = self.order_data
        order_id = payload.id
        try:
            await self.confirm_order(order_id)
        except Exception as e:
            message = f"Could not confirm order: {e}"
            logger.error("order_confirm_failed", order_id=order_id,
                         error=str(e))
            # stay visible so the user can retry
            if self.order_data is payload:
                self.last_error = message
            raise ConfirmFailed(message) from e
        logger.info("order_confirmed", order_id=order_id)
        # a newer order may have replaced this one while confirming
        if self.order_data is payload:
            self.audio.stop_alert()
            self.order_data = None
            self.last_error = None
        return order_id

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "is_visible": self.is_visible,
            "order_data": (
                self.order_data.to_dict() if self.order_data else None
            ),
            "can_confirm": self.confirm_order is not None,
            "last_error": self.last_error,
            "alert_playing": self.audio.is_playing,
            "vibrate": {
                "seq": self.vibrate_seq,
                "pattern": list(self.vibrate_pattern or ()),
            },
        }
