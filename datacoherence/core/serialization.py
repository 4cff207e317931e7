from abc import ABC, abstractmethod
from typing import Any

import orjson
from pydantic import BaseModel


class Serializer(ABC):
    """Abstract base class for realtime payload serialization."""

    @abstractmethod
    def serialize(self, data: Any) -> bytes:
        """Serializes data into bytes."""
        pass

    @abstractmethod
    def deserialize(self, data: bytes | str) -> Any:
        """Deserializes bytes into data."""
        pass


class JsonSerializer(Serializer):
    """orjson-backed serializer for change events and raw records."""

    def serialize(self, data: Any) -> bytes:
        """Serializes data to JSON bytes; entities are dumped in JSON mode."""

        def default(obj: Any) -> Any:
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode="json")
            if isinstance(obj, frozenset | set):
                return sorted(obj, key=repr)
            raise TypeError(f"Cannot serialize {type(obj).__name__}")

        return orjson.dumps(data, default=default)

    def deserialize(self, data: bytes | str) -> Any:
        """Deserializes JSON bytes (or text) using orjson.

        Raises ``orjson.JSONDecodeError`` (a ``ValueError``) on malformed input.
        """
        return orjson.loads(data)
