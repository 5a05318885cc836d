"""Uploaded program binary record."""

from pydantic import Field

from .base import BaseRecordModel
from .enums import UploadStatus


UPLOAD_KEY_PREFIX = "upload:"


def upload_key(file_id: str) -> str:
    """Return the store key for an upload record."""
    return "{0}{1}".format(UPLOAD_KEY_PREFIX, file_id)


class FileUploadRecord(BaseRecordModel):
    """A validated binary waiting to be claimed by one deployment."""

    file_id: str = Field(..., min_length=8)
    borrower: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    file_size: int = Field(..., gt=0)
    binary_hash: str = Field(..., min_length=64, max_length=64)
    estimated_cost: float = Field(..., ge=0)
    status: UploadStatus = Field(default=UploadStatus.READY)

    @property
    def key(self) -> str:
        """Store key of this record."""
        return upload_key(self.file_id)
