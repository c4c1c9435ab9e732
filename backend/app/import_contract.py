"""Shared contracts for bookmark export imports.

This module defines the immutable canonical record persisted by the store, the
parse result returned by import adapters and the import error taxonomy. Every
adapter resolves its source schema into these shapes before anything is stored.
"""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

CATEGORY_BOOKMARK = "bookmark"
CATEGORY_LIKE = "like"
CATEGORY_TWEET = "tweet"
CATEGORIES: Tuple[str, ...] = (CATEGORY_BOOKMARK, CATEGORY_LIKE, CATEGORY_TWEET)

UNKNOWN_ID = "unknown_id"
UNKNOWN_HANDLE = "Unknown"
UNKNOWN_NAME = "Twitter User"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def checksum_payload(payload: Mapping[str, Any] | Iterable[Mapping[str, Any]] | str | bytes) -> str:
    """Create a deterministic checksum for import provenance."""

    if isinstance(payload, (str, bytes)):
        raw = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        normalized = raw
    elif isinstance(payload, Mapping):
        normalized = json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), default=str)
    elif isinstance(payload, Iterable):
        normalized = json.dumps(list(payload), sort_keys=True, separators=(",", ":"), default=str)
    else:
        normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)

    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class ImportFailure(ValueError):
    """Base class for user-facing, recoverable import failures."""


class UnsupportedFormatError(ImportFailure):
    """The file extension is not one of the accepted export formats."""


class ParseFailureError(ImportFailure):
    """Neither whole-document nor line-by-line parsing produced any value."""


class NoValidEntriesError(ImportFailure):
    """The payload parsed but no entry could be resolved into a record."""


@dataclass(frozen=True)
class CanonicalRecord:
    """A normalized bookmark, like or tweet as persisted by the record store."""

    id: str
    full_text: str
    created_at: datetime
    author_handle: str
    author_name: str
    category: str
    avatar_url: Optional[str] = None
    media_url: Optional[str] = None
    media_urls: Tuple[str, ...] = ()
    video_url: Optional[str] = None
    deleted: bool = False
    raw_payload: Any = field(default=None, compare=True)

    @property
    def has_media(self) -> bool:
        return bool(self.video_url or self.media_url or self.media_urls)

    def image_urls(self) -> Tuple[str, ...]:
        if self.media_urls:
            return self.media_urls
        if self.media_url:
            return (self.media_url,)
        return ()


@dataclass(frozen=True)
class ImportParseResult:
    """Adapter parse output for one import file."""

    import_id: str
    source_type: str
    source_metadata: Dict[str, Any]
    records: Tuple[CanonicalRecord, ...]
    warnings: Tuple[str, ...]
    counts: Dict[str, int]

    @property
    def total_records(self) -> int:
        return len(self.records)


class ImportSourceAdapter(ABC):
    """Contract shared by import adapters."""

    source_type: str = "generic"

    @abstractmethod
    def parse(self, file_bytes: bytes, file_name: str) -> ImportParseResult:
        """Parse raw file bytes into immutable canonical records."""

    @abstractmethod
    def source_metadata(self, entries: Iterable[Any], file_name: str) -> Dict[str, Any]:
        """Return stable metadata for audit and provenance tracking."""
