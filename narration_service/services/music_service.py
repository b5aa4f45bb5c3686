from __future__ import annotations

import logging
import mimetypes
from typing import Callable, List, Optional
from uuid import uuid4

from narration_service.clients.fetcher import FetchOutcome, SecureFetcher
from narration_service.clients.media import probe_duration
from narration_service.config import Settings
from narration_service.errors import NotFoundError, PermissionDenied, ValidationError
from narration_service.models.domain import MusicCategory, MusicTrack
from narration_service.services.rate_limit import RateLimiter, RateLimitPolicy
from narration_service.storage.artifacts import ArtifactReplacer, build_object_store
from narration_service.storage.repository import MusicTrackRepository, StoryRepository
from narration_service.storage.tempfiles import temp_path

DEFAULT_TRACK_DURATION = 120.0
ACCEPTED_MEDIA_PREFIXES = ("audio/", "video/")
GENERIC_BINARY = "application/octet-stream"


class MusicLibraryService:
    def __init__(
        self,
        tracks: MusicTrackRepository,
        stories: StoryRepository,
        limiter: RateLimiter,
        settings: Settings,
        fetcher: SecureFetcher | None = None,
        replacer: ArtifactReplacer | None = None,
        probe: Callable[[str], float] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.tracks = tracks
        self.stories = stories
        self.limiter = limiter
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self.fetcher = fetcher or SecureFetcher(
            max_bytes=settings.max_import_bytes,
            timeout=settings.download_timeout,
            primary_tool=settings.downloader_tool,
            fallback_tool=settings.downloader_fallback_tool or None,
            tool_timeout=settings.downloader_timeout,
        )
        self.replacer = replacer or ArtifactReplacer(build_object_store(settings, settings.music_bucket))
        self.probe = probe or probe_duration
        self.import_policy = RateLimitPolicy(
            "MUSIC_IMPORT",
            settings.music_import_max_requests,
            settings.music_import_window_ms,
        )

    def import_track(
        self,
        identity: str,
        name: str,
        category: str | None = None,
        source_url: str | None = None,
        platform_reference: str | None = None,
        description: str | None = None,
    ) -> MusicTrack:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Music name is required")
        source_url = (source_url or "").strip() or None
        platform_reference = (platform_reference or "").strip() or None
        if bool(source_url) == bool(platform_reference):
            raise ValidationError("Provide exactly one of source_url or platform_reference")
        try:
            track_category = MusicCategory((category or MusicCategory.OTHER.value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown music category: {category}") from exc

        self.limiter.enforce(identity, self.import_policy)

        track_id = str(uuid4())
        with temp_path(f"music-{track_id}-") as destination:
            if platform_reference:
                outcome = self.fetcher.download_platform_audio(platform_reference, destination)
            else:
                outcome = self.fetcher.fetch(source_url, destination)
            content_type = self._accepted_content_type(outcome)
            duration = self._measure(str(destination))
            data = destination.read_bytes()
        draft = MusicTrack(
            id=track_id,
            name=name,
            description=(description or "").strip(),
            category=track_category,
            file_url="",
            duration=duration,
            uploaded_by=identity,
        )
        artifact = self.replacer.replace(
            f"music-{track_id}",
            data,
            content_type,
            self._extension_for(content_type),
            commit=lambda stored: self.tracks.save(
                draft.model_copy(update={"file_url": stored.url, "file_path": stored.path})
            ),
        )
        track = draft.model_copy(update={"file_url": artifact.url, "file_path": artifact.path})
        self.log.info(
            "music track imported",
            extra={
                "track_id": track.id,
                "user_id": identity,
                "source": outcome.source,
                "bytes": outcome.bytes_written,
                "duration": duration,
            },
        )
        return track

    def list_tracks(self, identity: str, category: str | None = None) -> List[MusicTrack]:
        if category:
            try:
                category = MusicCategory(category.strip().lower()).value
            except ValueError as exc:
                raise ValidationError(f"Unknown music category: {category}") from exc
        return self.tracks.list_visible(identity, category or None)

    def delete_track(self, identity: str, track_id: str) -> int:
        track = self.tracks.get(track_id)
        if track is None:
            raise NotFoundError("Music track not found")
        if track.is_preset:
            raise PermissionDenied("Preset music cannot be deleted")
        if track.uploaded_by != identity:
            raise PermissionDenied("You can only delete your own music")
        removed = self.replacer.purge(f"music-{track.id}")
        if removed == 0:
            self.log.warning("no stored files removed for music track", extra={"track_id": track.id})
        self.tracks.delete(track.id)
        detached = self.stories.detach_music(track.id)
        self.log.info(
            "music track deleted",
            extra={"track_id": track.id, "user_id": identity, "files": removed, "stories_detached": detached},
        )
        return detached

    def _accepted_content_type(self, outcome: FetchOutcome) -> str:
        content_type = (outcome.content_type_guess or GENERIC_BINARY).split(";", 1)[0].strip().lower()
        if content_type == GENERIC_BINARY:
            return "audio/mpeg"
        if content_type.startswith(ACCEPTED_MEDIA_PREFIXES):
            return content_type
        raise ValidationError(f"Unsupported content type for music import: {content_type}")

    def _measure(self, path: str) -> float:
        try:
            duration = float(self.probe(path) or 0.0)
        except Exception as exc:
            self.log.warning("duration probe failed, using default", extra={"path": path, "error": str(exc)})
            return DEFAULT_TRACK_DURATION
        return round(duration, 3) if duration > 1 else DEFAULT_TRACK_DURATION

    def _extension_for(self, content_type: str) -> str:
        if content_type in ("audio/mpeg", "audio/mp3"):
            return "mp3"
        return (mimetypes.guess_extension(content_type) or ".mp3").lstrip(".")
