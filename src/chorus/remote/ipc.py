"""Line-delimited JSON events the bridge writes on stdout for its supervisor."""

import json
import logging
import sys
from typing import Annotated, Literal, Optional, TextIO, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import ProtocolError

logger = logging.getLogger(__name__)


class _IpcModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Ready(_IpcModel):
    type: Literal["ready"] = "ready"
    bot_username: str = Field(alias="botUsername")


class Paired(_IpcModel):
    type: Literal["paired"] = "paired"
    user_id: int = Field(alias="userId")
    username: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")


class Prompt(_IpcModel):
    type: Literal["prompt"] = "prompt"
    user_id: int = Field(alias="userId")
    text: str


class Result(_IpcModel):
    type: Literal["result"] = "result"
    user_id: int = Field(alias="userId")
    prompt: str
    text: str
    tools: int = 0
    cost: Optional[float] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class Error(_IpcModel):
    type: Literal["error"] = "error"
    message: str


class Stopped(_IpcModel):
    type: Literal["stopped"] = "stopped"


IpcEvent = Annotated[Union[Ready, Paired, Prompt, Result, Error, Stopped], Field(discriminator="type")]
_adapter: TypeAdapter = TypeAdapter(IpcEvent)


def encode_event(event: BaseModel) -> str:
    return json.dumps(event.model_dump(mode="json", by_alias=True, exclude_none=True))


def parse_event(line: Union[str, bytes]):
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        return _adapter.validate_json(line)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid bridge event: {exc.errors()[0].get('msg', exc)}", raw=line) from exc


class IpcWriter:
    """Writes one event per line; stdout is reserved for these lines."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def emit(self, event: BaseModel) -> None:
        try:
            self.stream.write(encode_event(event) + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not write {event.type} event: {e}")
