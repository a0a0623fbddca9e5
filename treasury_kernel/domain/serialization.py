"""JSON-safe encoding of frozen dataclasses (Decimal, datetime, date, UUID, Enum, tuples)."""

from __future__ import annotations

import types
import typing
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union
from uuid import UUID


def encode_dataclass(obj: Any) -> dict[str, Any]:
    if not is_dataclass(obj):
        raise TypeError(f"{type(obj).__name__} is not a dataclass")
    return {f.name: encode_value(getattr(obj, f.name)) for f in fields(obj)}


def decode_dataclass(cls: type, payload: dict[str, Any]) -> Any:
    """
    Rebuild ``cls`` from an encoded payload.

    Keys not naming a field are ignored; missing optional fields take their
    defaults.

    Raises:
        ValueError: A required field is missing.
    """
    hints = typing.get_type_hints(cls)
    kwargs = {
        f.name: decode_value(payload[f.name], hints[f.name])
        for f in fields(cls)
        if f.name in payload
    }
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"Malformed {cls.__name__} payload: {exc}") from exc


def encode_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (tuple, list)):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if is_dataclass(value):
        return encode_dataclass(value)
    return value


def decode_value(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin in (Union, types.UnionType):
        inner = [a for a in typing.get_args(hint) if a is not type(None)]
        return decode_value(value, inner[0])
    if origin is tuple:
        args = typing.get_args(hint)
        item_hint = args[0] if args else Any
        return tuple(decode_value(v, item_hint) for v in value)
    if hint is Decimal:
        return Decimal(str(value))
    if hint is UUID:
        return UUID(str(value))
    if hint is datetime:
        return datetime.fromisoformat(value)
    if hint is date:
        return date.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    if isinstance(hint, type) and is_dataclass(hint):
        return decode_dataclass(hint, value)
    return value
