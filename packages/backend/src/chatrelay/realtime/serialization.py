"""Wire encoding for published payloads.

Learn: By default payloads travel as UTF-8 JSON, same as every other
event we put on Redis. Both directions can be swapped out:

- serializer(payload) -> str | bytes replaces json.dumps on publish
- deserializer(data, context) -> Any replaces json.loads on receive
- reviver(dict) -> Any is handed to json.loads as object_hook, for when the
  JSON is fine but you want richer objects back

A reviver only makes sense with the default JSON decoder, so supplying it
together with a deserializer is a configuration error.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from chatrelay.realtime.errors import ConfigError

RawMessage = Union[bytes, str]
Serializer = Callable[[Any], RawMessage]
Reviver = Callable[[dict], Any]


@dataclass(frozen=True)
class DeserializerContext:
    """Where a message came from, passed to custom deserializers."""

    channel: str
    pattern: Optional[str] = None


Deserializer = Callable[[RawMessage, DeserializerContext], Any]
Decoder = Callable[[RawMessage, DeserializerContext], Any]


def json_serializer(payload: Any) -> str:
    return json.dumps(payload)


def build_decoder(
    reviver: Optional[Reviver] = None,
    deserializer: Optional[Deserializer] = None,
) -> Decoder:
    """Pick the decode function for incoming messages.

    The returned decoder may raise; the engine falls back to the raw
    message when it does.
    """
    if reviver is not None and deserializer is not None:
        raise ConfigError("Reviver and deserializer can't be used together")

    if deserializer is not None:
        return deserializer

    def decode(data: RawMessage, context: DeserializerContext) -> Any:
        return json.loads(data, object_hook=reviver)

    return decode
