from datetime import datetime

from pydantic import BaseModel


class WebhookAck(BaseModel):
    message: str = "Webhook received successfully"
    timestamp: datetime
    signature_valid: bool
    enqueued: int
    duplicates: int


class QueueStatus(BaseModel):
    depth: int
    head_resource_id: str | None = None
    processor_running: bool
