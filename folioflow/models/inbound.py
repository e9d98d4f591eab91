"""Inbound event contract from the messaging gateway."""
from typing import Optional

from pydantic import ConfigDict, Field

from folioflow.models.base import FFBaseModel


class InboundEvent(FFBaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

    from_: str = Field(alias="from")
    body: str = ""
    delivery_id: Optional[str] = None
    attachment_count: int = Field(default=0, ge=0)
    attachment_url: Optional[str] = None
    attachment_content_type: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        return self.attachment_count > 0 and bool(self.attachment_url)

    @classmethod
    def from_twilio_form(cls, form) -> "InboundEvent":
        """Build from the Twilio webhook form fields."""
        try:
            count = int(form.get("NumMedia") or 0)
        except (TypeError, ValueError):
            count = 0
        return cls(
            **{
                "from": str(form.get("From") or ""),
                "body": str(form.get("Body") or ""),
                "delivery_id": form.get("MessageSid") or form.get("SmsMessageSid") or None,
                "attachment_count": count,
                "attachment_url": form.get("MediaUrl0") or None,
                "attachment_content_type": form.get("MediaContentType0") or None,
            }
        )
