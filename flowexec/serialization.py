import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, TypeVar, final
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .exceptions import CorruptFileError

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path

M = TypeVar("M", bound=BaseModel)


class Serializer(ABC):
    @abstractmethod
    def serialize(self, record: BaseModel) -> bytes:
        """Serialize a queue record into bytes for storage."""
        raise NotImplementedError()

    @abstractmethod
    def deserialize(self, data: bytes, model: type[M]) -> M:
        """Deserialize a queue record from storage."""
        raise NotImplementedError()

    @final
    def dump(self, path: "Path", record: BaseModel) -> None:
        """
        Write a record so that readers only ever observe the complete file. The
        temporary name starts with a dot so queue scans never pick it up.
        """
        staging = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        staging.write_bytes(self.serialize(record))
        os.replace(staging, path)

    @final
    def load(self, path: "Path", model: type[M]) -> M:
        try:
            return self.deserialize(path.read_bytes(), model)
        except (ValidationError, UnicodeDecodeError) as e:
            raise CorruptFileError(path) from e


class JsonSerializer(Serializer):
    def __init__(self, indent: int | None = 2) -> None:
        super().__init__()
        self.indent = indent

    def serialize(self, record: BaseModel) -> bytes:
        return record.model_dump_json(by_alias=True, indent=self.indent).encode()

    def deserialize(self, data: bytes, model: type[M]) -> M:
        return model.model_validate_json(data)
