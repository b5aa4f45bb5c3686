from __future__ import annotations

from threading import Lock
from typing import Any, Dict, List

from narration_service.models.domain import CreditTransaction, MusicTrack, Scene, Story, utcnow


class StoryRepository:
    def __init__(self) -> None:
        self._stories: Dict[str, Story] = {}
        self._lock = Lock()

    def save(self, story: Story) -> Story:
        with self._lock:
            self._stories[story.id] = story.model_copy(deep=True)
        return story

    def get(self, story_id: str) -> Story | None:
        with self._lock:
            story = self._stories.get(story_id)
            return story.model_copy(deep=True) if story else None

    def detach_music(self, music_id: str) -> int:
        with self._lock:
            detached = 0
            for story_id, story in self._stories.items():
                if story.background_music_id != music_id:
                    continue
                self._stories[story_id] = story.model_copy(
                    update={"background_music_id": None, "background_music_enabled": False}
                )
                detached += 1
            return detached


class SceneRepository:
    def __init__(self) -> None:
        self._scenes: Dict[str, Scene] = {}
        self._lock = Lock()

    def save(self, scene: Scene) -> Scene:
        with self._lock:
            for existing in self._scenes.values():
                if (
                    existing.id != scene.id
                    and existing.story_id == scene.story_id
                    and existing.order == scene.order
                ):
                    raise ValueError(f"scene order {scene.order} already used in story {scene.story_id}")
            self._scenes[scene.id] = scene.model_copy(deep=True)
        return scene

    def get(self, scene_id: str) -> Scene | None:
        with self._lock:
            scene = self._scenes.get(scene_id)
            return scene.model_copy(deep=True) if scene else None

    def list_by_story(self, story_id: str) -> List[Scene]:
        with self._lock:
            scenes = [scene.model_copy(deep=True) for scene in self._scenes.values() if scene.story_id == story_id]
        scenes.sort(key=lambda scene: scene.order)
        return scenes

    def update(self, scene_id: str, **fields: Any) -> Scene:
        with self._lock:
            scene = self._scenes.get(scene_id)
            if scene is None:
                raise KeyError(scene_id)
            payload = scene.model_dump()
            payload.update(fields)
            payload["last_modified_at"] = utcnow()
            updated = Scene.model_validate(payload)
            self._scenes[scene_id] = updated
            return updated.model_copy(deep=True)


class CreditTransactionRepository:
    """Append-only log of ledger entries."""

    def __init__(self) -> None:
        self._entries: List[CreditTransaction] = []
        self._lock = Lock()

    def append(self, entry: CreditTransaction) -> CreditTransaction:
        with self._lock:
            self._entries.append(entry.model_copy(deep=True))
        return entry

    def list_for(self, user_id: str) -> List[CreditTransaction]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._entries if entry.user_id == user_id]

    def sum_for(self, user_id: str) -> int:
        with self._lock:
            return sum(entry.amount for entry in self._entries if entry.user_id == user_id)

    def find_by_idempotency_key(self, user_id: str, key: str) -> CreditTransaction | None:
        with self._lock:
            for entry in self._entries:
                if entry.user_id == user_id and entry.idempotency_key == key:
                    return entry.model_copy(deep=True)
        return None


class MusicTrackRepository:
    def __init__(self) -> None:
        self._tracks: Dict[str, MusicTrack] = {}
        self._lock = Lock()

    def save(self, track: MusicTrack) -> MusicTrack:
        with self._lock:
            self._tracks[track.id] = track.model_copy(deep=True)
        return track

    def get(self, track_id: str) -> MusicTrack | None:
        with self._lock:
            track = self._tracks.get(track_id)
            return track.model_copy(deep=True) if track else None

    def delete(self, track_id: str) -> bool:
        with self._lock:
            return self._tracks.pop(track_id, None) is not None

    def list_visible(self, user_id: str, category: str | None = None) -> List[MusicTrack]:
        with self._lock:
            tracks = [
                track.model_copy(deep=True)
                for track in self._tracks.values()
                if (track.is_preset or track.uploaded_by == user_id)
                and (category is None or track.category.value == category)
            ]
        tracks.sort(key=lambda track: track.created_at, reverse=True)
        return tracks
