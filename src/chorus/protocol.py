"""Wire records exchanged over the remote channel.

Every record is a JSON object tagged by ``type``:

    client -> server: Auth, Invoke, Subscribe, Unsubscribe
    server -> client: AuthResult, InvokeResult, Event

Unknown tags and malformed JSON surface as ``ProtocolError`` so callers can log
and drop the line instead of crashing.
"""

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .errors import ProtocolError


class Auth(BaseModel):
    type: Literal["Auth"] = "Auth"
    token: str


class AuthResult(BaseModel):
    type: Literal["AuthResult"] = "AuthResult"
    success: bool
    error: Optional[str] = None


class Invoke(BaseModel):
    type: Literal["Invoke"] = "Invoke"
    id: int
    command: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _null_args(cls, value: Any) -> Any:
        return {} if value is None else value


class InvokeResult(BaseModel):
    type: Literal["InvokeResult"] = "InvokeResult"
    id: int
    result: Optional[Any] = None
    error: Optional[str] = None


class Subscribe(BaseModel):
    type: Literal["Subscribe"] = "Subscribe"
    event: str


class Unsubscribe(BaseModel):
    type: Literal["Unsubscribe"] = "Unsubscribe"
    event: str


class Event(BaseModel):
    type: Literal["Event"] = "Event"
    event: str
    payload: Any = None


ClientMessage = Annotated[
    Union[Auth, Invoke, Subscribe, Unsubscribe],
    Field(discriminator="type"),
]
ServerMessage = Annotated[
    Union[AuthResult, InvokeResult, Event],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter = TypeAdapter(ServerMessage)

# Optional keys left off the wire when unset.
_OMIT_WHEN_NONE = ("error", "result")


def encode(record: BaseModel) -> str:
    payload = record.model_dump(mode="json")
    for key in _OMIT_WHEN_NONE:
        if key in payload and payload[key] is None:
            del payload[key]
    return json.dumps(payload)


def _parse(adapter: TypeAdapter, raw: Union[str, bytes], side: str):
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return adapter.validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid {side} message: {exc.errors()[0].get('msg', exc)}", raw=raw) from exc


def parse_client_message(raw: Union[str, bytes]) -> Union[Auth, Invoke, Subscribe, Unsubscribe]:
    return _parse(_client_adapter, raw, "client")


def parse_server_message(raw: Union[str, bytes]) -> Union[AuthResult, InvokeResult, Event]:
    return _parse(_server_adapter, raw, "server")
