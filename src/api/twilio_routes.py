"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that connects the call to our media stream.
- Media Streams WebSocket that hands each call to the session controller.
- Endpoint to place outbound calls.
"""

from __future__ import annotations

import logging
from typing import Annotated
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, WebSocket

from api.dependencies import get_call_placer, get_twilio_cfg, get_ws_controller
from api.schemas import CallRequest, CallResponse
from config.settings import get_settings
from integrations.twilio_client import TwilioConfig
from integrations.twilio_streaming import TwilioMediaStream
from relay.errors import RelayError

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _twiml_connect_stream(*, stream_url: str, parameters: dict[str, str]) -> str:
    stream = escape(stream_url)
    params = "".join(
        f"<Parameter name={quoteattr(name)} value={quoteattr(value)} />" for name, value in parameters.items()
    )
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\">{params}</Stream>"
        "</Connect>"
        "</Response>"
    )


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
    else:
        # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
        base = str(request.base_url).rstrip("/")
    return _to_ws_url(f"{base}/api/twilio/media-stream")


@router.post("/voice")
async def twilio_voice_webhook(request: Request) -> Response:
    form = await request.form()

    parameters: dict[str, str] = {}
    for field, name in (("From", "caller_number"), ("To", "called_number"), ("Direction", "direction")):
        value = str(form.get(field) or "").strip()
        if value:
            parameters[name] = value

    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    LOGGER.info("Voice webhook for %s; connecting media stream", call_sid)
    return _twiml_response(_twiml_connect_stream(stream_url=_stream_url(request), parameters=parameters))


@router.websocket("/media-stream")
async def twilio_media_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    controller = get_ws_controller(websocket)
    if controller is None:
        LOGGER.error("Media stream opened before the relay started")
        await websocket.close(code=1013)
        return

    await controller.serve(TwilioMediaStream(websocket))


@router.post("/calls", response_model=CallResponse)
async def create_call(
    payload: CallRequest,
    x_api_key: Annotated[str | None, Header()] = None,
    call_placer=Depends(get_call_placer),
    cfg: TwilioConfig = Depends(get_twilio_cfg),
) -> CallResponse:
    settings = get_settings()

    if settings.twilio_calls_api_key and x_api_key != settings.twilio_calls_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")

    voice_url = f"{cfg.public_base_url.rstrip('/')}/api/twilio/voice"

    try:
        call_sid = await call_placer.place_call(
            to_number=payload.to_number,
            from_number=cfg.from_number,
            callback_url=voice_url,
        )
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return CallResponse(call_sid=call_sid, to_number=payload.to_number)
