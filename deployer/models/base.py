"""Shared base models and common type aliases."""

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import ModelValidationError


logger = logging.getLogger(__name__)

Lamports = int
RecordT = TypeVar("RecordT", bound="BaseRecordModel")


def utc_now() -> datetime:
    """Return current UTC timestamp."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base schema that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        validate_assignment=True,
    )


class BaseRecordModel(CamelModel):
    """Base schema for records kept in the key-value store."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        """Refresh `updated_at` before a write."""
        self.updated_at = utc_now()

    def to_record(self) -> Dict[str, Any]:
        """Serialize model into a JSON-ready store payload.

        Raises:
            ModelValidationError: If serialization fails.
        """
        try:
            return self.model_dump(mode="json", by_alias=True, exclude_none=True)
        except Exception as exc:
            logger.exception("Failed to serialize %s", self.__class__.__name__)
            raise ModelValidationError(str(exc))

    @classmethod
    def from_record(cls: Type[RecordT], data: Dict[str, Any]) -> RecordT:
        """Create model instance from a store payload.

        Raises:
            ModelValidationError: If payload parsing fails.
        """
        try:
            return cls.model_validate(data)
        except Exception as exc:
            logger.exception("Failed to parse store payload for %s", cls.__name__)
            raise ModelValidationError(str(exc))
