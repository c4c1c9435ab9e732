"""Bulk exports of the active record set."""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .import_contract import UNKNOWN_HANDLE, CanonicalRecord

EXPORT_FORMATS = {
    "json": "application/json",
    "jsonl": "application/x-jsonlines",
    "csv": "text/csv",
}

CSV_HEADERS = [
    "ID",
    "Date",
    "Handle",
    "Name",
    "Text",
    "Media Count",
    "Media URLs",
    "Video URL",
    "Original Link",
]


def export_filename(format_type: str, on: Optional[date] = None) -> str:
    on = on or datetime.now(timezone.utc).date()
    return f"twitter-vault-export-{on.isoformat()}.{format_type}"


def record_to_dict(record: CanonicalRecord) -> Dict[str, Any]:
    """Serialize a record using the round-trip keys the importer reads first."""

    return {
        "id": record.id,
        "fullText": record.full_text,
        "createdAt": record.created_at.astimezone(timezone.utc).isoformat(),
        "authorHandle": record.author_handle,
        "authorName": record.author_name,
        "avatarUrl": record.avatar_url,
        "mediaUrl": record.media_url,
        "mediaUrls": list(record.media_urls),
        "videoUrl": record.video_url,
        "category": record.category,
        "deleted": record.deleted,
        "rawPayload": record.raw_payload,
    }


def status_link(record: CanonicalRecord) -> str:
    if record.author_handle and record.author_handle != UNKNOWN_HANDLE:
        return f"https://twitter.com/{record.author_handle}/status/{record.id}"
    return f"https://twitter.com/i/web/status/{record.id}"


def export_json(records: Iterable[CanonicalRecord]) -> str:
    return json.dumps([record_to_dict(record) for record in records], indent=2, ensure_ascii=False)


def export_jsonl(records: Iterable[CanonicalRecord]) -> str:
    return "\n".join(json.dumps(record_to_dict(record), ensure_ascii=False) for record in records)


def export_csv(records: Iterable[CanonicalRecord], include_video: bool = True) -> str:
    headers = [h for h in CSV_HEADERS if include_video or h != "Video URL"]
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(headers)
    for record in records:
        row: List[Any] = [
            record.id,
            record.created_at.astimezone(timezone.utc).isoformat(),
            record.author_handle,
            record.author_name,
            record.full_text,
            len(record.media_urls),
            "; ".join(record.media_urls),
        ]
        if include_video:
            row.append(record.video_url or "")
        row.append(status_link(record))
        writer.writerow(row)
    return buffer.getvalue()


def export_records(records: Iterable[CanonicalRecord], format_type: str) -> str:
    if format_type == "json":
        return export_json(records)
    if format_type == "jsonl":
        return export_jsonl(records)
    if format_type == "csv":
        return export_csv(records)
    raise ValueError(f"Unsupported export format '{format_type}'. Supported values: json, jsonl, csv")
