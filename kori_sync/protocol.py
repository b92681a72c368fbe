"""
Wire protocol for the realtime transports.

Every message is a JSON object ``{"type": str, "payload"?: ...}``. Inbound
messages form a closed tagged union keyed by ``type``; anything outside it is
rejected at this boundary with a ``TransportError`` whose text is sent back to
the originating connection. Outbound messages are encoded here as well so the
WebSocket, SSE and REST surfaces share one serialization.
"""

import json
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import TransportError
from .models import PetPatch, PreferencesPatch, StatsPatch

# Server -> client types
PONG = "pong"
CAT_STATE = "cat:state"
PREFS_STATE = "prefs:state"
STATS_STATE = "stats:state"
ERROR = "error"


class _Message(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Ping(_Message):
    type: Literal["ping"]


class CatGet(_Message):
    type: Literal["cat:get", "cat:get_state"]


class CatUpdate(_Message):
    type: Literal["cat:update", "cat:update_state"]
    payload: PetPatch = Field(default_factory=PetPatch)


class PrefsGet(_Message):
    type: Literal["prefs:get", "prefs:get_state"]


class PrefsUpdate(_Message):
    type: Literal["prefs:update", "prefs:update_state"]
    payload: PreferencesPatch = Field(default_factory=PreferencesPatch)


class StatsGet(_Message):
    type: Literal["stats:get", "stats:get_state"]


class StatsUpdate(_Message):
    type: Literal["stats:update", "stats:update_state"]
    payload: StatsPatch = Field(default_factory=StatsPatch)


ClientMessage = Annotated[
    Union[Ping, CatGet, CatUpdate, PrefsGet, PrefsUpdate, StatsGet, StatsUpdate],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)

CLIENT_MESSAGE_TYPES: frozenset[str] = frozenset(
    literal
    for model in (Ping, CatGet, CatUpdate, PrefsGet, PrefsUpdate, StatsGet, StatsUpdate)
    for literal in get_args(model.model_fields["type"].annotation)
)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """
    Decode one inbound message.

    Raises:
        TransportError: If the text is not JSON, the type is unknown, or the
            payload does not match the message's schema.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TransportError("Invalid JSON") from e

    if not isinstance(data, dict):
        raise TransportError("Unknown type")
    message_type = data.get("type")
    if not isinstance(message_type, str) or message_type not in CLIENT_MESSAGE_TYPES:
        raise TransportError("Unknown type")

    # A null payload means "no payload"
    if data.get("payload", ...) is None:
        data = {k: v for k, v in data.items() if k != "payload"}

    try:
        return _client_message_adapter.validate_python(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'message'}: {err['msg']}"
            for err in e.errors()
        )
        raise TransportError(f"Invalid payload for {data['type']}: {details}") from e


def to_wire(value: Any) -> Any:
    """JSON-ready form of a payload; models are dumped in JSON mode."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def encode(message_type: str, payload: Any = None) -> str:
    """Encode an outbound message. ``payload`` is omitted when None."""
    message: dict[str, Any] = {"type": message_type}
    if payload is not None:
        message["payload"] = to_wire(payload)
    return json.dumps(message)
