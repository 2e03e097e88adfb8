"""Overlay WebSocket message schemas.

Outbound commands are serialized with camelCase aliases because the overlay
page is a browser client:

    {"type": "play", "requestId": "req_...", "url": "/media/<file>", ...}
    {"type": "stop", "fadeMs": 200}

Inbound messages from the overlay are validated as a discriminated union on
"type"; anything else is rejected by OverlayInbound.validate_json().
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class OverlayMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class PlayCommand(OverlayMessage):
    type: Literal["play"] = "play"
    request_id: str
    url: str
    title: str | None = None
    requester: str | None = None
    volume: float = 1
    loop: bool = False


class StopCommand(OverlayMessage):
    type: Literal["stop"] = "stop"
    fade_ms: int = 400


class PauseCommand(OverlayMessage):
    type: Literal["pause"] = "pause"


class ResumeCommand(OverlayMessage):
    type: Literal["resume"] = "resume"


class SeekCommand(OverlayMessage):
    type: Literal["seek"] = "seek"
    position_sec: float


class EndedEvent(OverlayMessage):
    type: Literal["ended"]
    request_id: str = Field(min_length=1)


class ErrorEvent(OverlayMessage):
    type: Literal["error"]
    request_id: str = Field(min_length=1)
    reason: str = "overlay playback error"


OverlayEvent = Annotated[EndedEvent | ErrorEvent, Field(discriminator="type")]
OverlayInbound: TypeAdapter[EndedEvent | ErrorEvent] = TypeAdapter(OverlayEvent)
