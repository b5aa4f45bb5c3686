from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from threading import BoundedSemaphore
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from narration_service.clients.media import probe_duration
from narration_service.clients.tts import OpenAISpeechClient
from narration_service.clients.whisper import LocalWhisperAligner
from narration_service.config import Settings
from narration_service.errors import (
    AlignmentError,
    InsufficientCredits,
    NotFoundError,
    PermissionDenied,
    PipelineError,
    UpstreamError,
    ValidationError,
)
from narration_service.events.publisher import BillingEventPublisher
from narration_service.models.domain import Scene, SceneState, Story, TransactionType, WordTimestamp, utcnow
from narration_service.services.credits import CreditLedger
from narration_service.services.rate_limit import RateLimiter, RateLimits
from narration_service.services.voices import Voice, VoiceCatalog
from narration_service.storage.artifacts import ArtifactReplacer, build_object_store
from narration_service.storage.repository import SceneRepository, StoryRepository
from narration_service.storage.tempfiles import temp_path

CANCELLED = "cancelled"


@dataclass
class SceneOutcome:
    scene_id: str
    order: int
    status: SceneState
    audio_url: str | None = None
    duration: float | None = None
    voice_id: str | None = None
    word_timestamps: List[WordTimestamp] | None = None
    error: str | None = None
    exc: Exception | None = field(default=None, repr=False)

    @classmethod
    def failed(cls, scene: Scene, error: str, exc: Exception | None = None) -> "SceneOutcome":
        return cls(scene_id=scene.id, order=scene.order, status=SceneState.FAILED, error=error, exc=exc)


@dataclass
class BatchAudioResult:
    batch_id: str
    story_id: str
    voice_id: str
    total_scenes: int
    successful_scenes: int
    credits_charged: int
    outcomes: List[SceneOutcome]
    billing_error: str | None = None


class SceneAudioService:
    """Narrates the scenes of a story and bills for what was produced.

    Each scene runs ``pending -> synthesizing -> measuring -> aligning ->
    persisting -> done``; any step but alignment can end it in ``failed``
    without touching the other scenes. Credits are checked before the batch
    starts and deducted once, afterwards, for the scenes that finished.
    """

    def __init__(
        self,
        stories: StoryRepository,
        scenes: SceneRepository,
        ledger: CreditLedger,
        limiter: RateLimiter,
        settings: Settings,
        tts: Any | None = None,
        aligner: Any | None = None,
        replacer: ArtifactReplacer | None = None,
        storage: Any | None = None,
        probe: Callable[[str], float] | None = None,
        events: BillingEventPublisher | None = None,
        voices: VoiceCatalog | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.stories = stories
        self.scenes = scenes
        self.ledger = ledger
        self.limiter = limiter
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self.tts = tts or OpenAISpeechClient(
            api_key=settings.openai_api_key,
            model_id=settings.audio_model,
            base_url=settings.openai_base_url,
            timeout=settings.tts_timeout,
        )
        self.aligner = aligner
        if self.aligner is None and settings.whisper_local_model:
            self.aligner = LocalWhisperAligner(
                model_name=settings.whisper_local_model,
                language=settings.alignment_language,
            )
        self.storage = storage or build_object_store(settings, settings.audio_bucket)
        self.replacer = replacer or ArtifactReplacer(self.storage)
        self.probe = probe or probe_duration
        self.events = events
        self.voices = voices or VoiceCatalog(
            default_voice=settings.default_voice,
            fallback_enabled=settings.voice_fallback_enabled,
        )
        self.unit_cost = settings.audio_credit_cost

    def generate_story_audio(
        self,
        identity: str,
        story_id: str,
        voice_id: str | None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> BatchAudioResult:
        story = self._owned_story(identity, story_id)
        scenes = self.scenes.list_by_story(story.id)
        if not scenes:
            raise ValidationError("No scenes found for this story")
        return self._run(identity, story, scenes, voice_id, should_cancel)

    def generate_scene_audio(self, identity: str, scene_id: str, voice_id: str | None) -> SceneOutcome:
        scene = self.scenes.get(scene_id)
        if scene is None:
            raise NotFoundError("Scene not found")
        story = self._owned_story(identity, scene.story_id)
        result = self._run(identity, story, [scene], voice_id, None)
        outcome = result.outcomes[0]
        if outcome.status is SceneState.FAILED:
            if outcome.exc is not None:
                raise outcome.exc
            raise PipelineError(outcome.error or "audio generation failed")
        return outcome

    def realign_scene(self, identity: str, scene_id: str) -> List[WordTimestamp]:
        scene = self.scenes.get(scene_id)
        if scene is None:
            raise NotFoundError("Scene not found")
        self._owned_story(identity, scene.story_id)
        if not scene.audio_path:
            raise ValidationError("Scene has no audio to align with")
        if not scene.text.strip():
            raise ValidationError("Scene has no text to align")
        if self.aligner is None:
            raise UpstreamError(None, message="alignment is not configured")
        audio = self.storage.download_bytes(scene.audio_path)
        with temp_path(f"align-{scene.id}-", ".mp3") as audio_file:
            audio_file.write_bytes(audio)
            try:
                timestamps = self.aligner.align(str(audio_file), scene.text)
            except AlignmentError as exc:
                self.log.error("scene realignment failed", extra={"scene_id": scene.id, "error": str(exc)})
                raise UpstreamError(None, message=f"Failed to align text: {exc}") from exc
        self.scenes.update(scene.id, word_timestamps=timestamps)
        self.log.info("scene realigned", extra={"scene_id": scene.id, "words": len(timestamps)})
        return timestamps

    def _owned_story(self, identity: str, story_id: str) -> Story:
        story = self.stories.get(story_id)
        if story is None:
            raise NotFoundError("Story not found")
        if story.user_id != identity:
            raise PermissionDenied("Forbidden - You don't own this story")
        return story

    def _run(
        self,
        identity: str,
        story: Story,
        scenes: List[Scene],
        voice_id: str | None,
        should_cancel: Callable[[], bool] | None,
    ) -> BatchAudioResult:
        voice = self.voices.resolve(voice_id)
        self.limiter.enforce(identity, RateLimits.AUDIO_GENERATION)
        self.ledger.initialize(identity)
        needed = len(scenes) * self.unit_cost
        balance = self.ledger.get_balance(identity)
        if balance < needed:
            self.log.warning(
                "insufficient credits for audio batch",
                extra={"user_id": identity, "story_id": story.id, "needed": needed, "balance": balance},
            )
            raise InsufficientCredits(credits_needed=needed, current_balance=balance)

        batch_id = f"batch:{uuid4().hex}"
        self.log.info(
            "audio batch started",
            extra={"batch_id": batch_id, "story_id": story.id, "scenes": len(scenes), "voice": voice.value},
        )
        outcomes = self._process_all(scenes, voice, should_cancel)
        done = sum(1 for outcome in outcomes if outcome.status is SceneState.DONE)
        charged, billing_error = self._settle(identity, story.id, batch_id, done)
        self.log.info(
            "audio batch finished",
            extra={
                "batch_id": batch_id,
                "story_id": story.id,
                "successful": done,
                "failed": len(outcomes) - done,
                "credits_charged": charged,
            },
        )
        return BatchAudioResult(
            batch_id=batch_id,
            story_id=story.id,
            voice_id=voice.value,
            total_scenes=len(scenes),
            successful_scenes=done,
            credits_charged=charged,
            outcomes=outcomes,
            billing_error=billing_error,
        )

    def _process_all(
        self,
        scenes: List[Scene],
        voice: Voice,
        should_cancel: Callable[[], bool] | None,
    ) -> List[SceneOutcome]:
        workers = max(1, self.settings.batch_concurrency)
        slots = BoundedSemaphore(workers)
        futures: Dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scene-audio") as pool:
            for scene in scenes:
                slots.acquire()
                if should_cancel is not None and should_cancel():
                    slots.release()
                    self.log.info("audio batch cancelled", extra={"next_scene_id": scene.id})
                    break
                future = pool.submit(self._process_scene, scene, voice)
                future.add_done_callback(lambda _done: slots.release())
                futures[scene.id] = future
        outcomes: List[SceneOutcome] = []
        for scene in scenes:
            future = futures.get(scene.id)
            outcomes.append(future.result() if future is not None else SceneOutcome.failed(scene, CANCELLED))
        return outcomes

    def _process_scene(self, scene: Scene, voice: Voice) -> SceneOutcome:
        state = SceneState.PENDING
        if not scene.text.strip():
            return SceneOutcome.failed(scene, "Scene has no text")
        try:
            with temp_path(f"scene-{scene.id}-", ".mp3") as audio_file:
                state = SceneState.SYNTHESIZING
                audio = self.tts.synthesize(scene.text, voice.value)
                audio_file.write_bytes(audio)

                state = SceneState.MEASURING
                duration = self._measure(audio_file)

                state = SceneState.ALIGNING
                timestamps = self._align(scene, audio_file)

                state = SceneState.PERSISTING
                artifact = self.replacer.replace(
                    f"scene-{scene.id}",
                    audio,
                    "audio/mpeg",
                    "mp3",
                    commit=lambda stored: self.scenes.update(
                        scene.id,
                        audio_url=stored.url,
                        audio_path=stored.path,
                        duration=duration,
                        voice_id=voice.value,
                        word_timestamps=timestamps,
                        audio_generated_at=utcnow(),
                    ),
                )
        except PipelineError as exc:
            self.log.warning(
                "scene audio failed",
                extra={"scene_id": scene.id, "state": state.value, "error": str(exc)},
            )
            return SceneOutcome.failed(scene, str(exc), exc)
        except Exception as exc:
            self.log.exception("scene audio crashed", extra={"scene_id": scene.id, "state": state.value})
            return SceneOutcome.failed(scene, "Internal error while generating audio", exc)
        return SceneOutcome(
            scene_id=scene.id,
            order=scene.order,
            status=SceneState.DONE,
            audio_url=artifact.url,
            duration=duration,
            voice_id=voice.value,
            word_timestamps=timestamps,
        )

    def _measure(self, audio_file: Path) -> float:
        try:
            duration = float(self.probe(str(audio_file)))
        except Exception as exc:
            raise UpstreamError(None, message=f"could not measure audio duration: {exc}") from exc
        if duration <= 0:
            raise UpstreamError(None, message="synthesized audio has no duration")
        return round(duration, 3)

    def _align(self, scene: Scene, audio_file: Path) -> List[WordTimestamp] | None:
        if self.aligner is None:
            return None
        try:
            return self.aligner.align(str(audio_file), scene.text)
        except AlignmentError as exc:
            self.log.warning(
                "word alignment failed, keeping audio without timestamps",
                extra={"scene_id": scene.id, "error": str(exc)},
            )
            return None

    def _settle(self, identity: str, story_id: str, batch_id: str, done: int) -> tuple[int, str | None]:
        if done == 0:
            return 0, None
        amount = done * self.unit_cost
        try:
            result = self.ledger.deduct(
                identity,
                amount,
                TransactionType.DEDUCTION_AUDIO,
                f"Audio generation for {done} scene{'s' if done != 1 else ''}",
                correlation_id=story_id,
                idempotency_key=batch_id,
            )
        except PipelineError as exc:
            error = str(exc)
        else:
            if result.success:
                self._emit("settled", identity, story_id, batch_id, amount)
                return amount, None
            error = result.error or "deduction failed"
        self.log.error(
            "audio batch settle-up failed",
            extra={"user_id": identity, "story_id": story_id, "batch_id": batch_id, "amount": amount, "error": error},
        )
        self._emit("settlement_failed", identity, story_id, batch_id, amount, error)
        return 0, error

    def _emit(
        self,
        event: str,
        identity: str,
        story_id: str,
        batch_id: str,
        amount: int,
        error: str | None = None,
    ) -> None:
        if not self.events:
            return
        payload: dict[str, Any] = {
            "user_id": identity,
            "story_id": story_id,
            "batch_id": batch_id,
            "amount": amount,
            "reason": TransactionType.DEDUCTION_AUDIO.value,
        }
        if error:
            payload["error"] = error
        try:
            self.events.publish(event, payload)
        except Exception:  # pragma: no cover
            self.log.warning("billing event emission failed", extra={"batch_id": batch_id}, exc_info=True)
