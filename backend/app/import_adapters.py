"""Import adapters for bookmark and like exports."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .import_contract import (
    CATEGORIES,
    CATEGORY_BOOKMARK,
    CATEGORY_LIKE,
    UNKNOWN_HANDLE,
    UNKNOWN_ID,
    UNKNOWN_NAME,
    CanonicalRecord,
    ImportParseResult,
    ImportSourceAdapter,
    NoValidEntriesError,
    ParseFailureError,
    UnsupportedFormatError,
    checksum_payload,
)

logger = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS: Tuple[str, ...] = (".json", ".jsonl")

# Epoch values below this are seconds, anything else is milliseconds.
_EPOCH_SECONDS_CEILING = 10_000_000_000

_PREFIXED_ID = re.compile(r"^(?:bookmark|like|tweet)_(?:.*_)?(\d+)$", re.IGNORECASE)
_VIDEO_MEDIA_TYPES = frozenset({"video", "animated_gif"})
_MP4_CONTENT_TYPE = "video/mp4"

MediaTriple = Tuple[Optional[str], Tuple[str, ...], Optional[str]]


def _variant_bitrate(variant: Mapping[str, Any]) -> int:
    try:
        return int(variant.get("bitrate") or 0)
    except (TypeError, ValueError):
        return 0


def select_best_video_variant(variants: Iterable[Any]) -> Optional[Mapping[str, Any]]:
    """Pick the highest-bitrate MPEG-4 variant; ties keep the first one seen."""

    candidates = [
        variant
        for variant in variants or ()
        if isinstance(variant, Mapping)
        and str(variant.get("content_type") or "").lower() == _MP4_CONTENT_TYPE
        and isinstance(variant.get("url"), str)
        and variant["url"]
    ]
    return max(candidates, key=_variant_bitrate, default=None)


def strip_id_prefix(raw_id: str) -> str:
    match = _PREFIXED_ID.match(raw_id)
    if match:
        return match.group(1)
    return raw_id


class BookmarkExportAdapter(ImportSourceAdapter):
    """Adapter for bookmark/like exports from browser extraction tools.

    Entries are flat mappings that may match the vault's own round-trip schema,
    a bookmark-extension schema keyed by ``tweet_id``/``media_items`` or an
    API-style schema keyed by ``id_str``/``extended_entities``/typed ``media``.
    Each logical field is probed independently in a fixed priority order, so an
    entry that partially matches several schemas still resolves.
    """

    source_type = "twitter_export"

    _id_keys: Sequence[str] = ("id", "tweet_id", "id_str", "rest_id")
    _text_keys: Sequence[str] = ("fullText", "full_text", "text", "legacy.full_text")
    _timestamp_keys: Sequence[str] = ("createdAt", "created_at", "timestamp", "date")
    _handle_keys: Sequence[str] = ("authorHandle", "screen_name", "user.screen_name", "core.screen_name")
    _name_keys: Sequence[str] = ("authorName", "name", "username", "user.name", "core.name")
    _avatar_keys: Sequence[str] = (
        "avatarUrl",
        "avatar_url",
        "profile_image_url",
        "user.profile_image_url_https",
        "user.profile_image_url",
    )
    _timestamp_formats: Sequence[str] = (
        "%a %b %d %H:%M:%S %z %Y",
        "%Y-%m-%d %H:%M:%S %z",
        "%Y-%m-%d %H:%M:%S",
    )

    def parse(self, file_bytes: bytes, file_name: str) -> ImportParseResult:
        self._check_extension(file_name)
        imported_at = datetime.now(timezone.utc)
        entries, warnings = self._load_entries(self._decode(file_bytes))

        counts: Counter[str] = Counter()
        records: List[CanonicalRecord] = []
        for index, entry in enumerate(entries):
            counts["entries"] += 1
            if not isinstance(entry, Mapping):
                warnings.append(f"Skipped entry {index + 1}: expected a JSON object")
                counts["skipped"] += 1
                continue
            record = self.normalize_entry(entry, imported_at)
            records.append(record)
            counts[record.category] += 1

        if not records:
            raise NoValidEntriesError("No valid data found in file.")

        return ImportParseResult(
            import_id=checksum_payload(file_bytes),
            source_type=self.source_type,
            source_metadata=self.source_metadata(entries, file_name),
            records=tuple(records),
            warnings=tuple(warnings),
            counts=dict(counts),
        )

    def source_metadata(self, entries: Iterable[Any], file_name: str) -> Dict[str, Any]:
        entries = list(entries)
        schemas = Counter(self._detect_schema(entry) for entry in entries if isinstance(entry, Mapping))
        return {
            "source_type": self.source_type,
            "file_name": file_name,
            "entry_count": len(entries),
            "schemas": dict(schemas),
            "adapter": self.__class__.__name__,
        }

    def normalize_entry(self, entry: Mapping[str, Any], imported_at: datetime) -> CanonicalRecord:
        media_url, media_urls, video_url = self._resolve_media(entry)
        return CanonicalRecord(
            id=self._resolve_id(entry),
            full_text=self._coerce_text(self._probe(entry, self._text_keys)),
            created_at=self._resolve_created_at(entry, imported_at),
            author_handle=self._coerce_handle(self._probe(entry, self._handle_keys)) or UNKNOWN_HANDLE,
            author_name=self._coerce_text(self._probe(entry, self._name_keys)) or UNKNOWN_NAME,
            avatar_url=self._coerce_url(self._probe(entry, self._avatar_keys)),
            media_url=media_url,
            media_urls=media_urls,
            video_url=video_url,
            category=self._resolve_category(entry),
            deleted=False,
            raw_payload=entry["rawPayload"] if "rawPayload" in entry else dict(entry),
        )

    def _check_extension(self, file_name: str) -> None:
        if not str(file_name or "").lower().endswith(ACCEPTED_EXTENSIONS):
            raise UnsupportedFormatError("Please upload a .json or .jsonl file.")

    def _decode(self, file_bytes: bytes | str) -> str:
        if isinstance(file_bytes, str):
            return file_bytes.lstrip("\ufeff")
        return file_bytes.decode("utf-8", errors="replace").lstrip("\ufeff")

    def _load_entries(self, text: str) -> Tuple[List[Any], List[str]]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.info("Whole-document parse failed, switching to line-by-line parsing")
        else:
            return (list(payload) if isinstance(payload, list) else [payload]), []

        entries: List[Any] = []
        warnings: List[str] = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            candidate = line.strip()
            if not candidate:
                continue
            try:
                entries.append(json.loads(candidate))
            except json.JSONDecodeError as exc:
                logger.debug("Discarding line %d: %s", line_number, exc)
                warnings.append(f"Skipped line {line_number}: not valid JSON")

        if not entries:
            raise ParseFailureError("Could not parse file as JSON or JSON Lines.")
        return entries, warnings

    def _probe(self, entry: Mapping[str, Any], paths: Sequence[str]) -> Any:
        for path in paths:
            value: Any = entry
            for part in path.split("."):
                if not isinstance(value, Mapping):
                    value = None
                    break
                value = value.get(part)
            if value is None or value == "" or isinstance(value, bool):
                continue
            return value
        return None

    def _resolve_id(self, entry: Mapping[str, Any]) -> str:
        raw = self._probe(entry, self._id_keys)
        if raw is None:
            return UNKNOWN_ID
        raw_id = str(raw).strip()
        if not raw_id:
            return UNKNOWN_ID
        return strip_id_prefix(raw_id)

    def _resolve_created_at(self, entry: Mapping[str, Any], imported_at: datetime) -> datetime:
        for key in self._timestamp_keys:
            if key not in entry:
                continue
            resolved = self._coerce_timestamp(entry[key])
            if resolved is not None:
                return resolved
        return imported_at

    def _coerce_timestamp(self, raw: Any) -> Optional[datetime]:
        if raw is None or isinstance(raw, bool):
            return None
        if isinstance(raw, datetime):
            return raw.astimezone(timezone.utc) if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
        if isinstance(raw, (int, float)):
            return self._from_epoch(raw)
        if not isinstance(raw, str):
            return None

        candidate = raw.strip()
        if not candidate:
            return None
        try:
            return self._from_epoch(float(candidate))
        except ValueError:
            pass

        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is None:
            for fmt in self._timestamp_formats:
                try:
                    parsed = datetime.strptime(candidate, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _from_epoch(self, value: float) -> Optional[datetime]:
        millis = value * 1000 if value < _EPOCH_SECONDS_CEILING else value
        try:
            return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def _resolve_category(self, entry: Mapping[str, Any]) -> str:
        for key in ("category", "type"):
            value = entry.get(key)
            if isinstance(value, str) and value.strip().lower() in CATEGORIES:
                return value.strip().lower()
        if entry.get("bookmarked") is True:
            return CATEGORY_BOOKMARK
        if entry.get("favorited") is True:
            return CATEGORY_LIKE
        return CATEGORY_BOOKMARK

    def _resolve_media(self, entry: Mapping[str, Any]) -> MediaTriple:
        for resolver in (self._internal_media, self._typed_media, self._entity_media):
            resolved = resolver(entry)
            if resolved is not None:
                return resolved
        return None, (), None

    def _internal_media(self, entry: Mapping[str, Any]) -> Optional[MediaTriple]:
        raw_urls = entry.get("mediaUrls")
        media_url = self._coerce_url(entry.get("mediaUrl"))
        video_url = self._coerce_url(entry.get("videoUrl"))
        if not isinstance(raw_urls, list) and media_url is None and video_url is None:
            return None

        urls = tuple(url for url in (self._coerce_url(u) for u in raw_urls or []) if url)
        if urls:
            media_url = urls[0]
        elif media_url:
            urls = (media_url,)
        return media_url, urls, video_url

    def _typed_media(self, entry: Mapping[str, Any]) -> Optional[MediaTriple]:
        items = entry.get("media")
        if not isinstance(items, list):
            return None
        typed = [item for item in items if isinstance(item, Mapping) and item.get("type")]
        if not typed:
            return None

        display_urls: List[str] = []
        video_url: Optional[str] = None
        for item in typed:
            media_type = str(item.get("type")).lower()
            original = self._coerce_url(item.get("original") or item.get("url"))
            thumbnail = self._coerce_url(item.get("thumbnail"))
            if media_type in _VIDEO_MEDIA_TYPES:
                display = thumbnail
                if video_url is None and original:
                    video_url = original
            else:
                display = original or thumbnail
            if display:
                display_urls.append(display)

        if not display_urls and video_url is None:
            return None
        return (display_urls[0] if display_urls else None), tuple(display_urls), video_url

    def _entity_media(self, entry: Mapping[str, Any]) -> Optional[MediaTriple]:
        items = entry.get("media_items")
        if not isinstance(items, list):
            items = self._probe(entry, ("extended_entities.media", "entities.media"))
        if not isinstance(items, list):
            return None

        display_urls: List[str] = []
        video_url: Optional[str] = None
        for item in items:
            if not isinstance(item, Mapping):
                continue
            display = self._coerce_url(item.get("media_url_https") or item.get("media_url"))
            if display:
                display_urls.append(display)
            if video_url is None:
                video_info = item.get("video_info")
                variants = video_info.get("variants") if isinstance(video_info, Mapping) else None
                best = select_best_video_variant(variants or ())
                if best is not None:
                    video_url = best["url"]

        if not display_urls and video_url is None:
            return None
        return (display_urls[0] if display_urls else None), tuple(display_urls), video_url

    def _detect_schema(self, entry: Mapping[str, Any]) -> str:
        if "fullText" in entry or "authorHandle" in entry:
            return "vault"
        if "tweet_id" in entry or "media_items" in entry:
            return "bookmark_extension"
        if "id_str" in entry or "extended_entities" in entry or isinstance(entry.get("user"), Mapping):
            return "twitter_api"
        if "bookmarked" in entry or "favorited" in entry or isinstance(entry.get("media"), list):
            return "web_exporter"
        return "unknown"

    def _coerce_text(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, list):
            return " ".join([self._coerce_text(v) for v in value]).strip()
        if isinstance(value, Mapping):
            if "text" in value and isinstance(value["text"], str):
                return value["text"]
        return ""

    def _coerce_handle(self, value: Any) -> str:
        return self._coerce_text(value).strip().lstrip("@")

    def _coerce_url(self, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


_ADAPTERS: Dict[str, ImportSourceAdapter] = {
    BookmarkExportAdapter.source_type: BookmarkExportAdapter(),
}


def get_import_adapter(source_type: str = "auto") -> ImportSourceAdapter | None:
    if source_type in {"auto", "twitter", "x", "twillot", "bookmarks", "likes", "vault"}:
        return _ADAPTERS.get("twitter_export")
    return _ADAPTERS.get(source_type)


def normalize(file_bytes: bytes, file_name: str) -> List[CanonicalRecord]:
    """Parse one export file into canonical records without persisting them."""

    return list(BookmarkExportAdapter().parse(file_bytes, file_name).records)
