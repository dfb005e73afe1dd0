"""
Pydantic models for the repository file listing returned by the ModelScope API.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EntryKind(str, Enum):
    """Kinds of nodes in a remote repository tree, keyed by their wire value."""

    DIRECTORY = "tree"
    FILE = "blob"


class RepositoryEntry(BaseModel):
    """One listed node of the remote tree, either a directory or a file."""

    type: str = Field(alias="Type")
    name: str = Field(alias="Name")
    path: str = Field(alias="Path")
    size: int = Field(default=0, alias="Size")
    revision: str = Field(default="", alias="Revision")

    class Config:
        """Pydantic model configuration."""

        populate_by_name = True
        frozen = True

    @property
    def kind(self) -> Optional[EntryKind]:
        """The entry kind, or None for wire types this client does not handle."""
        try:
            return EntryKind(self.type)
        except ValueError:
            return None

    @property
    def is_directory(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE

    @classmethod
    def directory(cls, name: str, path: str | None = None, revision: str = ""):
        """Builds a directory entry; mainly useful for fakes and tests."""
        return cls(
            type=EntryKind.DIRECTORY.value,
            name=name,
            path=path if path is not None else name,
            size=0,
            revision=revision,
        )

    @classmethod
    def file(cls, name: str, size: int, revision: str, path: str | None = None):
        """Builds a file entry; mainly useful for fakes and tests."""
        return cls(
            type=EntryKind.FILE.value,
            name=name,
            path=path if path is not None else name,
            size=size,
            revision=revision,
        )


class FileListingData(BaseModel):
    files: list[RepositoryEntry] = Field(default_factory=list, alias="Files")

    class Config:
        populate_by_name = True


class FileListingResponse(BaseModel):
    """Envelope of the ``repo/files`` endpoint: ``{"Code": ..., "Data": {"Files": [...]}}``."""

    code: int = Field(default=200, alias="Code")
    data: FileListingData = Field(default_factory=FileListingData, alias="Data")
    message: str = Field(default="", alias="Message")
    success: bool = Field(default=True, alias="Success")

    class Config:
        populate_by_name = True
