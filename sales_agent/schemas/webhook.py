from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class IncomingWebhook(BaseModel):
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId", "phoneNumber", "phone_number"))
    content: str
    timestamp: Optional[int] = None  # epoch seconds, as delivered by WhatsApp
    message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("message_id", "messageId"),
    )


class WebhookResponse(BaseModel):
    success: bool
    message: str
    pending: int = 0
