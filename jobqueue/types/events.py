"""
Event envelope carried over the `<prefix>:events` pub/sub topic.
"""

from typing import Any

from pydantic import BaseModel, ValidationError

from jobqueue.exceptions import MalformedMessage


class EventEnvelope(BaseModel):
    """
    A published job mutation.

    `args` holds the event's extra arguments, not the event name.
    """

    id: int
    event: str
    args: list[Any] = []

    @classmethod
    def build(cls, job_id: int, event: str, *args: Any) -> "EventEnvelope":
        return cls(id=job_id, event=event, args=list(args))

    def encode(self) -> str:
        """Serialize to the JSON wire format."""
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str | bytes) -> "EventEnvelope":
        """
        Parse a wire message.

        Raises:
            MalformedMessage: If the payload is not a valid envelope.
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedMessage(f"undecodable event envelope: {e}") from e
