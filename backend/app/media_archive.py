"""Batched media download into a zip archive."""

from __future__ import annotations

import asyncio
import inspect
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

import httpx

from .import_contract import CanonicalRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3
DEFAULT_TIMEOUT = 20.0

ProgressCallback = Callable[[int, int], Any]


class MediaArchiveError(RuntimeError):
    """Base class for archive failures surfaced to the caller."""


class NoMediaFoundError(MediaArchiveError):
    """None of the candidate records references any media."""


class AllDownloadsFailedError(MediaArchiveError):
    """Every individual media fetch failed."""


@dataclass(frozen=True)
class MediaUnit:
    record: CanonicalRecord
    url: str
    is_video: bool
    index: Optional[int] = None


@dataclass(frozen=True)
class MediaArchiveResult:
    success_count: int
    total_units: int
    filename: str
    content: bytes


def _safe_label(owner_label: str) -> str:
    return re.sub(r"[^\w.-]", "_", owner_label.strip().lstrip("@")) or "media"


def plan_media_units(records: Iterable[CanonicalRecord]) -> List[MediaUnit]:
    """Flatten records into download units.

    A record with a video contributes only that video. Otherwise it contributes
    one unit per image, numbered from 1 when there is more than one.
    """

    units: List[MediaUnit] = []
    for record in records:
        if record.deleted or not record.has_media:
            continue
        if record.video_url:
            units.append(MediaUnit(record=record, url=record.video_url, is_video=True))
            continue
        images = record.image_urls()
        for position, url in enumerate(images, start=1):
            units.append(
                MediaUnit(
                    record=record,
                    url=url,
                    is_video=False,
                    index=position if len(images) > 1 else None,
                )
            )
    return units


def _extension_for(unit: MediaUnit, content_type: str) -> str:
    if unit.is_video:
        return "mp4"
    subtype = content_type.split(";", 1)[0].strip().split("/")[-1] if "/" in content_type else ""
    return subtype or "jpg"


def media_filename(owner_label: str, unit: MediaUnit, extension: str) -> str:
    day = unit.record.created_at.astimezone(timezone.utc).date().isoformat()
    suffix = f"_{unit.index}" if unit.index is not None else ""
    return f"{_safe_label(owner_label)}_{day}_{unit.record.id}{suffix}.{extension}"


async def _fetch(client: httpx.AsyncClient, unit: MediaUnit) -> Tuple[bytes, str]:
    response = await client.get(unit.url)
    response.raise_for_status()
    return response.content, response.headers.get("content-type", "")


async def _notify(on_progress: Optional[ProgressCallback], completed: int, total: int) -> None:
    if on_progress is None:
        return
    outcome = on_progress(completed, total)
    if inspect.isawaitable(outcome):
        await outcome


async def archive_media(
    records: Iterable[CanonicalRecord],
    owner_label: str,
    on_progress: Optional[ProgressCallback] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: float = DEFAULT_TIMEOUT,
) -> MediaArchiveResult:
    """Download the media of ``records`` into an in-memory zip archive.

    Units are fetched ``batch_size`` at a time; the next batch starts only once
    every fetch of the current one has settled. A failed fetch is logged and
    skipped. ``on_progress(completed, total)`` runs once per unit.
    """

    units = plan_media_units(records)
    if not units:
        raise NoMediaFoundError("No media found for this user.")

    total = len(units)
    batch_size = max(1, batch_size)
    folder = f"{_safe_label(owner_label)}_media"
    buffer = io.BytesIO()
    state = {"completed": 0, "succeeded": 0}

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    try:
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:

            async def _download(unit: MediaUnit) -> None:
                try:
                    content, content_type = await _fetch(client, unit)
                except Exception as exc:
                    kind = "video" if unit.is_video else "image"
                    logger.warning("Failed to download %s %s: %s", kind, unit.url, exc)
                else:
                    name = media_filename(owner_label, unit, _extension_for(unit, content_type))
                    archive.writestr(f"{folder}/{name}", content)
                    state["succeeded"] += 1
                finally:
                    state["completed"] += 1
                    await _notify(on_progress, state["completed"], total)

            for start in range(0, total, batch_size):
                batch = units[start : start + batch_size]
                outcomes = await asyncio.gather(*(_download(unit) for unit in batch), return_exceptions=True)
                for unit, outcome in zip(batch, outcomes):
                    if isinstance(outcome, Exception):
                        logger.error("Media unit %s of record %s failed: %s", unit.url, unit.record.id, outcome)
    finally:
        if owns_client:
            await client.aclose()

    if state["succeeded"] == 0:
        raise AllDownloadsFailedError("Failed to download media.")

    logger.info("Archived %d of %d media files for %s", state["succeeded"], total, owner_label)
    return MediaArchiveResult(
        success_count=state["succeeded"],
        total_units=total,
        filename=f"{folder}.zip",
        content=buffer.getvalue(),
    )
