"""
WhatsApp Webhook

Receives inbound messages from Twilio as form posts. The gateway retries
on anything but a 2xx, so this endpoint always answers 200 with a TwiML
reply; errors travel inside the reply text. Fan-outs for committed
transitions run as background tasks after the response is sent.
"""

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import Response

from folioflow.core.dispatch import get_dispatcher
from folioflow.models.inbound import InboundEvent
from folioflow.services.inbound import RETRY_LATER_REPLY, get_inbound_handler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def twiml(message: str) -> Response:
    body = f"<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response><Message>{escape(message or '')}</Message></Response>"
    return Response(content=body, media_type="application/xml", status_code=200)


@router.post("/whatsapp")
async def whatsapp_inbound(request: Request, background_tasks: BackgroundTasks):
    try:
        form = await request.form()
        event = InboundEvent.from_twilio_form(form)
    except Exception as exc:
        logger.error("Unreadable inbound webhook: %s", exc)
        return twiml(RETRY_LATER_REPLY)

    result = await get_inbound_handler().handle(event)
    if result.notifications:
        background_tasks.add_task(get_dispatcher().dispatch_all, list(result.notifications))
    return twiml(result.reply)
