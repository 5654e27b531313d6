from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from config.settings import get_settings
from relay.errors import BackendUnavailable

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")
    if not settings.twilio_from_number:
        raise ValueError("Twilio from-number is not configured")
    if not settings.public_base_url:
        raise ValueError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/"),
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


class TwilioCallPlacer:
    """Places outbound calls through the Twilio REST API; implements `CallPlacer`.

    The Twilio SDK is synchronous, so requests run in a worker thread.
    """

    def __init__(self, client=None) -> None:
        self._client = client or build_twilio_client()

    async def place_call(self, *, to_number: str, from_number: str, callback_url: str) -> str:
        from twilio.base.exceptions import TwilioException

        try:
            call = await asyncio.to_thread(
                self._client.calls.create,
                to=to_number,
                from_=from_number,
                url=callback_url,
                method="POST",
            )
        except TwilioException as exc:
            LOGGER.error("Twilio call to %s failed: %s", to_number, exc)
            raise BackendUnavailable(f"Twilio call failed: {exc}") from exc

        LOGGER.info("Placed call %s to %s", call.sid, to_number)
        return str(call.sid)
