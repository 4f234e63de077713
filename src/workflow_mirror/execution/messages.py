"""Wire messages exchanged with the external run executor.

Every message is an envelope `{"type": <TYPE>, "payload": {...}}`. Payload keys
are camelCase on the wire and must stay exactly as they are.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class MalformedMessage(ValueError):
    pass


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    TYPE: ClassVar[str]

    def to_message(self) -> dict[str, object]:
        return {"type": self.TYPE, "payload": self.model_dump(mode="json")}


class CreateRunWindow(_Payload):
    """Ask the executor to start running `runId` of session `sessionId`."""

    TYPE: ClassVar[str] = "CREATE_RUN_WINDOW"

    sessionId: str
    runId: str


class RequestScreenshot(_Payload):
    TYPE: ClassVar[str] = "REQUEST_SCREENSHOT"

    runId: str


class JumpToRunWindow(_Payload):
    TYPE: ClassVar[str] = "JUMP_TO_RUN_WINDOW"

    runId: str


class ScreenshotResponse(_Payload):
    """Asynchronous reply to a screenshot request; not paired with the request."""

    TYPE: ClassVar[str] = "SCREENSHOT_RESPONSE"

    runId: str
    image: str


class RunWindowClosed(_Payload):
    """The executor observed the run's window closing outside of our control."""

    TYPE: ClassVar[str] = "RUN_WINDOW_CLOSED"

    runId: str


InboundMessage = ScreenshotResponse | RunWindowClosed

_INBOUND: dict[str, type[ScreenshotResponse] | type[RunWindowClosed]] = {
    ScreenshotResponse.TYPE: ScreenshotResponse,
    RunWindowClosed.TYPE: RunWindowClosed,
}


def parse_inbound(raw: object) -> InboundMessage | None:
    """Parse a message received from the executor.

    The channel is shared with unrelated traffic, so anything that is not an
    envelope of a known inbound type yields `None`.

    Raises:
        MalformedMessage: a known type with an invalid payload.
    """

    if not isinstance(raw, dict):
        return None
    message_type = raw.get("type")
    model = _INBOUND.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        return None

    payload = raw.get("payload")
    try:
        return model.model_validate(payload if isinstance(payload, dict) else {})
    except ValidationError as e:
        raise MalformedMessage(f"Invalid {message_type} payload: {e}") from e
