"""Pydantic models for cached geocoding responses and outbound feedback.

Both models use camelCase on the wire: the geocoding service writes records
that way, and downstream consumers of the feedback topic expect it.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GeocodingResponseRecord(BaseModel):
    """A geocoding response awaiting a user choice.

    Unknown fields written by the geocoding service are preserved so that a
    read-modify-write in the store never drops data it does not understand.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    api_key: Optional[str] = None
    site: Optional[str] = None
    response: Any = None
    responded_at: Optional[datetime] = None
    user_id: Optional[str] = None
    was_used: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class FeedbackRecord(BaseModel):
    """The message published to Kafka for one request id.

    ``chosen_result_id`` is ``None`` when no result was selected before the
    feedback window elapsed.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_id: str
    chosen_result_id: Optional[int] = None
    user_id: str = ""
    response_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    geocoding_response: GeocodingResponseRecord

    @property
    def is_implicit(self) -> bool:
        return self.chosen_result_id is None

    def to_message(self) -> Dict[str, Any]:
        """Return the JSON-compatible payload sent to the broker."""
        return self.model_dump(mode="json", by_alias=True)
