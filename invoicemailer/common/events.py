"""Webhook event models shared by the ingest endpoint and the processor.

Field names follow Python conventions; the camelCase names Xero uses on the
wire are aliases, and the queue file is written with the same aliases so a
queued event looks exactly like the event that was received.
"""

from datetime import datetime, timezone

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WebhookEvent(BaseModel):
    """One change notification for one Xero resource."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    resource_id: str = ""
    # Xero calls this resourceUrl on the wire.
    resource_uri: str = Field(
        default="",
        validation_alias=AliasChoices("resourceUrl", "resourceUri", "resource_uri"),
        serialization_alias="resourceUrl",
    )
    tenant_id: str = ""
    tenant_type: str = ""
    event_category: str = ""
    event_type: str = ""
    event_date_utc: datetime

    @field_validator("event_date_utc")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Xero sends naive timestamps that are UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def identity(self) -> tuple[str, datetime]:
        """Queue uniqueness key; one resource can produce many events."""

        return self.resource_id, self.event_date_utc

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class WebhookPayload(BaseModel):
    """Body of a Xero webhook delivery."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    events: list[WebhookEvent] = Field(default_factory=list)
    first_event_sequence: int = 0
    last_event_sequence: int = 0
    entropy: str = ""
