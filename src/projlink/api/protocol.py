"""Tagged wire messages shared by the short-range and socket links.

Every message travels as a UTF-8 JSON object. A discriminator field names the
concrete variant: the generic sync protocol uses ``type`` and the
remote-control protocol uses ``commandType``. Field names are camelCase on the
wire and snake_case in Python. Unknown fields are ignored on decode so newer
peers can add fields without breaking older ones.

Example:
    payload = encode(GeneralCommand(command="play"))
    message = decode(payload)
    assert message == GeneralCommand(command="play")
"""

import itertools
import json
import threading
from collections.abc import Callable, Mapping
from dataclasses import MISSING, fields
from enum import Enum
from typing import Any, ClassVar, TypeVar, get_args, get_type_hints

# Discriminator fields
TYPE_FIELD = "type"
COMMAND_TYPE_FIELD = "commandType"

_DISCRIMINATORS = (TYPE_FIELD, COMMAND_TYPE_FIELD)

_REGISTRY: dict[tuple[str, str], type["ProtocolMessage"]] = {}

_M = TypeVar("_M", bound="ProtocolMessage")


class DecodeError(ValueError):
    """A frame could not be decoded into a known message.

    Attributes:
        payload: The raw frame that failed to decode.
    """

    def __init__(self, message: str, payload: bytes | str = b"") -> None:
        super().__init__(message)
        self.payload = payload


def _to_camel(name: str) -> str:
    """Convert a snake_case attribute name to its camelCase wire key."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _wire_type(hint: Any) -> Any:
    """Return the concrete type of a hint, unwrapping ``X | None``."""
    args = [a for a in get_args(hint) if a is not type(None)]
    return args[0] if args else hint


class ProtocolMessage:
    """Base class of every wire message.

    Concrete variants are frozen dataclasses registered with :func:`message`,
    which sets the discriminator field and the variant name.
    """

    discriminator: ClassVar[str] = TYPE_FIELD
    type_name: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict, omitting unset optional fields."""
        result: dict[str, Any] = {self.discriminator: self.type_name}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            result[_to_camel(f.name)] = value
        return result

    def to_json(self) -> str:
        """Serialize to a compact JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls: type[_M], data: Mapping[str, Any]) -> _M:
        """Create a message from a decoded JSON object.

        Raises:
            DecodeError: If a required field is missing or has the wrong type.
        """
        hints = get_type_hints(cls)
        kwargs: dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            key = _to_camel(f.name)
            if key not in data:
                if f.default is MISSING and f.default_factory is MISSING:
                    raise DecodeError(f"{cls.type_name}: missing field {key!r}")
                continue
            kwargs[f.name] = _coerce(cls.type_name, key, hints[f.name], data[key])
        return cls(**kwargs)


def _coerce(type_name: str, key: str, hint: Any, value: Any) -> Any:
    """Validate a wire value against its field type."""
    if value is None:
        if type(None) in get_args(hint):
            return None
        raise DecodeError(f"{type_name}: field {key!r} must not be null")

    expected = _wire_type(hint)
    if isinstance(expected, type) and issubclass(expected, Enum):
        try:
            return expected(value)
        except ValueError as e:
            raise DecodeError(f"{type_name}: invalid {key!r} value {value!r}") from e
    if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise DecodeError(f"{type_name}: field {key!r} must be an integer")
    if expected is bool and not isinstance(value, bool):
        raise DecodeError(f"{type_name}: field {key!r} must be a boolean")
    if expected is str and not isinstance(value, str):
        raise DecodeError(f"{type_name}: field {key!r} must be a string")
    return value


def message(
    type_name: str,
    discriminator: str = TYPE_FIELD,
) -> Callable[[type[_M]], type[_M]]:
    """Register a message class under ``type_name``.

    Args:
        type_name: Value of the discriminator field for this variant.
        discriminator: Name of the discriminator field.
    """
    if discriminator not in _DISCRIMINATORS:
        raise ValueError(f"Unknown discriminator field: {discriminator}")

    def decorator(cls: type[_M]) -> type[_M]:
        key = (discriminator, type_name)
        if key in _REGISTRY:
            raise ValueError(f"Duplicate message type: {discriminator}={type_name}")
        cls.discriminator = discriminator
        cls.type_name = type_name
        _REGISTRY[key] = cls
        return cls

    return decorator


def encode(msg: ProtocolMessage) -> bytes:
    """Encode a message as a UTF-8 JSON frame."""
    return msg.to_json().encode("utf-8")


def decode(payload: bytes | bytearray | str) -> ProtocolMessage:
    """Decode a frame into its concrete message variant.

    Args:
        payload: Raw frame, bytes or already-decoded text.

    Returns:
        The decoded message.

    Raises:
        DecodeError: If the frame is not valid UTF-8 JSON, has no known
            discriminator, or is missing required fields.
    """
    raw: bytes | str = bytes(payload) if isinstance(payload, bytearray) else payload
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Malformed frame: {e}", raw) from e

    if not isinstance(data, dict):
        raise DecodeError("Frame is not a JSON object", raw)

    # A tag under one discriminator may be an unrelated extra field
    unknown: tuple[str, Any] | None = None
    for discriminator in _DISCRIMINATORS:
        tag = data.get(discriminator)
        if tag is None:
            continue
        cls = _REGISTRY.get((discriminator, tag)) if isinstance(tag, str) else None
        if cls is None:
            unknown = unknown or (discriminator, tag)
            continue
        try:
            return cls.from_dict(data)
        except DecodeError as e:
            raise DecodeError(str(e), raw) from e
        except TypeError as e:
            raise DecodeError(f"{tag}: {e}", raw) from e

    if unknown is not None:
        raise DecodeError(f"Unknown {unknown[0]}: {unknown[1]!r}", raw)
    raise DecodeError("Frame has no discriminator field", raw)


def registered_types() -> list[type[ProtocolMessage]]:
    """Return every registered message class."""
    return list(_REGISTRY.values())


class RequestIdGenerator:
    """Thread-safe, monotonically increasing request id source.

    Ids are process-local and rendered as decimal strings.
    """

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        """Return the next request id."""
        with self._lock:
            return str(next(self._counter))


_default_ids = RequestIdGenerator()


def next_request_id() -> str:
    """Return the next id from the process-wide generator."""
    return _default_ids.next_id()
