import json
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from exceptions import DecodeError
from models import MESSAGE_MODELS, MessageKind, WireMessage, utcnow

class MessageCodec:
    """
    JSON codec for the four message kinds exchanged with the devices.
    Encoding always stamps a timestamp (now, unless one was supplied) and an
    origen tag. Decoding raises nothing but DecodeError.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def encode(
        self
        , kind      : MessageKind
        , fields    : Union[Mapping[str, Any], WireMessage]
    ) -> bytes:
        model = MESSAGE_MODELS[kind]
        if isinstance(fields, WireMessage):
            message = model.model_validate(fields.model_dump(by_alias=True))
        else:
            message = model.model_validate(dict(fields))

        if message.timestamp is None:
            message = message.model_copy(update={"timestamp": self._clock()})

        data = message.model_dump(mode="json", by_alias=True)
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    def decode(
        self
        , payload   : Union[bytes, str]
        , kind      : Optional[MessageKind] = None
    ) -> Tuple[MessageKind, WireMessage]:
        """
        kind normally comes from the topic the payload arrived on; without it
        the kind is inferred from the fields present.
        """
        raw = _as_bytes(payload)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"payload is not valid JSON: {e}", raw) from e

        if not isinstance(data, dict):
            raise DecodeError(f"payload must be a JSON object, got {type(data).__name__}", raw)

        if kind is None:
            kind = infer_kind(data)
            if kind is None:
                raise DecodeError("cannot infer message kind from payload", raw)

        try:
            message = MESSAGE_MODELS[kind].model_validate(data)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            )
            raise DecodeError(f"invalid {kind.value} message: {errors}", raw) from e

        return kind, message

def infer_kind(data: Mapping[str, Any]) -> Optional[MessageKind]:
    if "mensaje" in data:
        return MessageKind.status_ack
    if "estado" in data:
        if data.get("origen") == "backend":
            return MessageKind.command
        return MessageKind.state_report
    if "esp32Id" in data:
        return MessageKind.heartbeat
    return None

def _as_bytes(payload: Union[bytes, str]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8", "replace")
