"""JSON codecs for slice values.

Slices keep frozen dataclasses and tuples in memory; the local store and the
remote mirror only see JSON-native data. A codec converts between the two.
"""
import dataclasses
import json
import typing
from enum import Enum
from typing import Any, Callable, Generic, Type, TypeVar, Union

from portal.exceptions import SerializationError

T = TypeVar("T")


def to_json(value: Any) -> Any:
    """Recursively convert records, enums and tuples into JSON-native data."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_json(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_json(v) for k, v in value.items()}
    return value


def from_json(tp: Any, data: Any) -> Any:
    """Rebuild a value of type ``tp`` from JSON-native ``data``.

    Unknown keys are ignored and missing optional fields take their defaults,
    so records written by older builds still load.
    """
    if data is None:
        return None

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin is Union:
        inner = [a for a in args if a is not type(None)]
        return from_json(inner[0], data)
    if origin in (tuple, typing.Tuple):
        return tuple(from_json(args[0], item) for item in data)
    if origin in (list, typing.List):
        return [from_json(args[0], item) for item in data]
    if origin in (dict, typing.Dict) or tp is dict:
        return dict(data)
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        if not isinstance(data, dict):
            raise SerializationError(f"expected an object for {tp.__name__}, got {type(data).__name__}")
        hints = typing.get_type_hints(tp)
        kwargs = {
            f.name: from_json(hints[f.name], data[f.name])
            for f in dataclasses.fields(tp)
            if f.name in data
        }
        try:
            return tp(**kwargs)
        except TypeError as e:
            raise SerializationError(f"cannot build {tp.__name__}: {e}") from e
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(data)
    if tp is int and not isinstance(data, bool):
        return int(data)
    return data


def dumps(data: Any) -> str:
    try:
        return json.dumps(data, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e)) from e


def loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        raise SerializationError(str(e)) from e


class Codec(Generic[T]):
    """Identity codec for values that are already JSON-native (numbers, strings)."""

    def encode(self, value: T) -> Any:
        return to_json(value)

    def decode(self, data: Any) -> T:
        return data


class ScalarCodec(Codec[T]):
    def __init__(self, cast: Callable[[Any], T]):
        self.cast = cast

    def decode(self, data: Any) -> T:
        try:
            return self.cast(data)
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e


class RecordCodec(Codec[T]):
    def __init__(self, record_type: Type[T]):
        self.record_type = record_type

    def decode(self, data: Any) -> T:
        try:
            return from_json(self.record_type, data)
        except (TypeError, ValueError, KeyError) as e:
            raise SerializationError(str(e)) from e


class RecordListCodec(Codec[typing.Tuple[T, ...]]):
    def __init__(self, record_type: Type[T]):
        self.record_type = record_type

    def decode(self, data: Any) -> typing.Tuple[T, ...]:
        if not isinstance(data, list):
            raise SerializationError(f"expected a list of {self.record_type.__name__}")
        try:
            return tuple(from_json(self.record_type, item) for item in data)
        except (TypeError, ValueError, KeyError) as e:
            raise SerializationError(str(e)) from e
