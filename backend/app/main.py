"""FastAPI backend for the Twitter Vault bookmark archive."""

from __future__ import annotations

import os
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import analytics, exporter
from .import_adapters import get_import_adapter
from .import_contract import CATEGORIES, CanonicalRecord, ImportFailure
from .media_archive import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_TIMEOUT,
    AllDownloadsFailedError,
    NoMediaFoundError,
    archive_media,
)
from .storage import RecordStore, StorageFailure, resolve_db_path


app = FastAPI(title="Twitter Vault API", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ARCHIVE_PROGRESS_LIMIT = 64
_archive_progress: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()


class MediaArchiveRequest(BaseModel):
    author_handle: str
    category: Optional[str] = None


@app.on_event("startup")
def _startup() -> None:
    if getattr(app.state, "store", None) is None:
        app.state.store = RecordStore(resolve_db_path()).open()


@app.on_event("shutdown")
def _shutdown() -> None:
    store = getattr(app.state, "store", None)
    if store is not None:
        store.close()
        app.state.store = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _store() -> RecordStore:
    store = getattr(app.state, "store", None)
    if store is None or not store.is_open:
        raise HTTPException(status_code=503, detail="record store is not open")
    return store


def _env_int(name: str, default: int) -> int:
    try:
        return max(1, int(os.getenv(name, "") or default))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _normalise_source_type(source_type: str) -> str:
    return str(source_type or "").strip().lower().replace("-", "_").replace(" ", "_")


def _check_category(category: str) -> str:
    normalized = str(category or "").strip().lower()
    if normalized not in CATEGORIES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported category '{category}'. Supported values: {', '.join(CATEGORIES)}",
        )
    return normalized


def _newest_first(records: List[CanonicalRecord]) -> List[CanonicalRecord]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)


def _track_progress(handle: str) -> Dict[str, Any]:
    """Start a progress entry for ``handle``, keeping only the most recent owners."""
    progress = {"completed": 0, "total": 0, "status": "running", "updated_at": _now_iso()}
    _archive_progress.pop(handle, None)
    _archive_progress[handle] = progress
    while len(_archive_progress) > _ARCHIVE_PROGRESS_LIMIT:
        _archive_progress.popitem(last=False)
    return progress


@app.get("/api/health")
def health() -> Dict[str, Any]:
    store = _store()
    return {
        "status": "ok",
        "schema_version": store.schema_version(),
        "counts": store.count_by_category(),
        "updated_at": _now_iso(),
    }


@app.post("/api/import")
async def import_file(
    source_file: UploadFile = File(...),
    source_type: str = Form(default="auto"),
) -> Dict[str, Any]:
    store = _store()
    source_type_key = _normalise_source_type(source_type)
    adapter = get_import_adapter(source_type_key)
    if adapter is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported source_type '{source_type}'. Supported values: auto, twitter, x, twillot",
        )

    file_name = source_file.filename or ""
    raw_data = await source_file.read()
    try:
        parse_result = adapter.parse(raw_data, file_name)
    except ImportFailure as exc:
        store.append_event("import.failed", f"Import of {file_name} failed: {exc}", "error")
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        imported = store.upsert(parse_result.records)
    except StorageFailure as exc:
        store.append_event("import.failed", f"Import of {file_name} could not be stored: {exc}", "error")
        raise HTTPException(status_code=500, detail=str(exc))

    store.append_event(
        "import.completed",
        f"Imported {imported} records from {file_name}",
        "warning" if parse_result.warnings else "info",
        payload={
            "import_id": parse_result.import_id,
            "counts": parse_result.counts,
            "warning_count": len(parse_result.warnings),
        },
    )
    return {
        "import_id": parse_result.import_id,
        "imported": imported,
        "counts": parse_result.counts,
        "warnings": list(parse_result.warnings),
        "source_metadata": parse_result.source_metadata,
        "updated_at": _now_iso(),
    }


@app.get("/api/records")
def list_records(
    category: str = Query(default="bookmark"),
    author: Optional[str] = None,
) -> Dict[str, Any]:
    records = _store().query_by_category(_check_category(category))
    if author:
        handle = author.strip().lstrip("@")
        records = [record for record in records if record.author_handle == handle]
    return {
        "records": [exporter.record_to_dict(record) for record in _newest_first(records)],
        "total": len(records),
        "updated_at": _now_iso(),
    }


@app.get("/api/records/{record_id}")
def get_record(record_id: str) -> Dict[str, Any]:
    record = _store().get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"record '{record_id}' not found")
    return {"record": exporter.record_to_dict(record)}


@app.delete("/api/records/{record_id}")
def delete_record(record_id: str) -> Dict[str, Any]:
    store = _store()
    try:
        record = store.soft_delete(record_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"record '{record_id}' not found")
    store.append_event("record.deleted", f"Record {record_id} hidden", payload={"id": record_id})
    return {"record": exporter.record_to_dict(record), "updated_at": _now_iso()}


@app.post("/api/reset")
def reset_store() -> Dict[str, Any]:
    removed = _store().purge_all()
    _archive_progress.clear()
    return {"removed": removed, "updated_at": _now_iso()}


@app.get("/api/activity/{category}")
def get_activity(
    category: str,
    year: Optional[int] = Query(default=None, ge=1000, le=9999),
) -> Dict[str, Any]:
    category = _check_category(category)
    records = _store().query_by_category(category)
    selected_year = year or datetime.now(timezone.utc).year
    stats = analytics.compute_year_stats(records, selected_year)
    calendar = analytics.build_year_calendar(analytics.build_day_counts(records), selected_year)
    return {
        "category": category,
        "year": selected_year,
        "available_years": analytics.available_years(records),
        "stats": stats.as_dict(),
        "calendar": [day.as_dict() for day in calendar],
        "updated_at": _now_iso(),
    }


@app.get("/api/export/{format_type}")
def export_records(format_type: str) -> Response:
    format_key = format_type.strip().lower()
    if format_key not in exporter.EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported export format '{format_type}'. Supported values: json, jsonl, csv",
        )
    store = _store()
    records = store.list_active()
    if not records:
        raise HTTPException(status_code=404, detail="No data to export!")

    content = exporter.export_records(records, format_key)
    filename = exporter.export_filename(format_key)
    store.append_event(
        "export.created",
        f"Exported {len(records)} records as {format_key}",
        payload={"format": format_key, "count": len(records)},
    )
    return Response(
        content=content,
        media_type=exporter.EXPORT_FORMATS[format_key],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/media-archive")
async def create_media_archive(payload: MediaArchiveRequest) -> Response:
    store = _store()
    handle = payload.author_handle.strip().lstrip("@")
    if not handle:
        raise HTTPException(status_code=400, detail="author_handle is required")

    records = store.list_active()
    if payload.category:
        category = _check_category(payload.category)
        records = [record for record in records if record.category == category]
    records = [record for record in records if record.author_handle == handle]

    progress = _track_progress(handle)

    def _on_progress(completed: int, total: int) -> None:
        progress.update(completed=completed, total=total, updated_at=_now_iso())

    try:
        result = await archive_media(
            _newest_first(records),
            handle,
            _on_progress,
            batch_size=_env_int("VAULT_MEDIA_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            timeout=_env_float("VAULT_MEDIA_TIMEOUT", DEFAULT_TIMEOUT),
        )
    except NoMediaFoundError as exc:
        progress["status"] = "empty"
        raise HTTPException(status_code=404, detail=str(exc))
    except AllDownloadsFailedError as exc:
        progress["status"] = "failed"
        store.append_event("media.failed", f"Media archive for {handle} failed: {exc}", "error")
        raise HTTPException(status_code=502, detail=str(exc))

    progress["status"] = "done"
    store.append_event(
        "media.archived",
        f"Archived {result.success_count} of {result.total_units} media files for {handle}",
        "info" if result.success_count == result.total_units else "warning",
        payload={"handle": handle, "success_count": result.success_count, "total": result.total_units},
    )
    return Response(
        content=result.content,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "X-Media-Success-Count": str(result.success_count),
            "X-Media-Total": str(result.total_units),
        },
    )


@app.get("/api/media-archive/progress/{owner}")
def get_media_archive_progress(owner: str) -> Dict[str, Any]:
    progress = _archive_progress.get(owner.strip().lstrip("@"))
    if progress is None:
        raise HTTPException(status_code=404, detail=f"no media archive started for '{owner}'")
    return {"owner": owner, **progress}


@app.get("/api/events")
def get_events(limit: int = 25) -> Dict[str, Any]:
    return {"events": _store().list_events(limit), "updated_at": _now_iso()}
