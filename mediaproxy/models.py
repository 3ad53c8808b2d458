from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Optional

STATUS_DOWNLOADING = "downloading"
STATUS_READY = "ready"
STATUS_ERROR = "error"

STATUSES = (STATUS_DOWNLOADING, STATUS_READY, STATUS_ERROR)

# Python attribute -> key in the record file
_RECORD_KEYS = {
    "id": "id",
    "source": "source",
    "status": "status",
    "path": "path",
    "size": "size",
    "added_at": "addedAt",
    "last_access": "lastAccess",
    "error": "error",
    "title": "title",
    "description": "description",
}


@dataclass
class CacheEntry:
    id: str
    status: str = STATUS_DOWNLOADING
    source: Optional[str] = None
    path: Optional[str] = None
    size: Optional[int] = None
    added_at: int = 0
    last_access: Optional[int] = None
    error: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status == STATUS_READY and bool(self.path)

    def last_used(self) -> int:
        return int(self.last_access or self.added_at or 0)

    def copy(self) -> "CacheEntry":
        return replace(self)

    def to_record(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for attr, val in asdict(self).items():
            if val is None:
                continue
            out[_RECORD_KEYS[attr]] = val
        return out

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Build an entry from a record-file dict.

        Raises ValueError when the record has no usable id or status.
        """
        if not isinstance(data, dict):
            raise ValueError("record is not an object")
        eid = data.get("id")
        if not isinstance(eid, str) or not eid:
            raise ValueError("record has no id")
        status = data.get("status") or STATUS_DOWNLOADING
        if status not in STATUSES:
            raise ValueError(f"unknown status {status!r}")

        def _int(key: str) -> Optional[int]:
            val = data.get(key)
            if val is None:
                return None
            try:
                return int(val)
            except (TypeError, ValueError):
                return None

        return cls(
            id=eid,
            status=status,
            source=data.get("source"),
            path=data.get("path"),
            size=_int("size"),
            added_at=_int("addedAt") or 0,
            last_access=_int("lastAccess"),
            error=data.get("error"),
            title=data.get("title"),
            description=data.get("description"),
        )
