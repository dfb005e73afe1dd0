"""
Ledger record describing the last known state of one locally materialized file.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class FileRecord:
    """A file that was downloaded successfully, keyed by its normalized local path."""

    local_path: str
    size: int
    revision: str
    last_modified: datetime

    @classmethod
    def now(cls, local_path: str, size: int, revision: str) -> "FileRecord":
        return cls(
            local_path=local_path,
            size=size,
            revision=revision,
            last_modified=datetime.now(timezone.utc),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_modified"] = self.last_modified.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        """
        Rebuilds a record from its serialized form.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed.
        """
        last_modified = data["last_modified"]
        if not isinstance(last_modified, datetime):
            last_modified = datetime.fromisoformat(str(last_modified))
        return cls(
            local_path=str(data["local_path"]),
            size=int(data["size"]),
            revision=str(data["revision"]),
            last_modified=last_modified,
        )
