from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Iterable, List, Optional

from narration_service.errors import AlignmentError
from narration_service.models.domain import WordTimestamp


def normalize_timeline(entries: Iterable[tuple[str, float, float]]) -> List[WordTimestamp]:
    """Clamp raw word timings into a non-decreasing, start <= end sequence."""
    timeline: List[WordTimestamp] = []
    previous_start = 0.0
    for word, start, end in entries:
        word = word.strip()
        if not word:
            continue
        start = max(float(start), previous_start, 0.0)
        end = max(float(end), start)
        timeline.append(WordTimestamp(word=word, start=round(start, 3), end=round(end, 3)))
        previous_start = start
    return timeline


class LocalWhisperAligner:
    def __init__(
        self,
        model_name: str = "base",
        language: str = "en",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.model_name = model_name
        self.language = language
        self.log = logger or logging.getLogger(__name__)
        self._model = None
        self._lock = Lock()

    def enabled(self) -> bool:
        return bool(self.model_name)

    def _load_model(self) -> Any:
        if self._model is None:
            try:
                import whisper
            except ImportError as exc:
                raise AlignmentError("openai-whisper is not installed") from exc
            self._model = whisper.load_model(self.model_name)
            self.log.info("local whisper model loaded", extra={"model": self.model_name})
        return self._model

    def align(self, audio_path: str, text: str) -> List[WordTimestamp]:
        if not text.strip():
            raise AlignmentError("no text to align")
        with self._lock:
            model = self._load_model()
            try:
                result = model.transcribe(
                    audio_path,
                    language=self.language,
                    word_timestamps=True,
                    initial_prompt=text,
                    verbose=False,
                )
            except Exception as exc:
                raise AlignmentError(f"whisper alignment failed: {exc}") from exc
        recognized = [
            (word.get("word", ""), word.get("start", 0.0), word.get("end", 0.0))
            for segment in result.get("segments", [])
            for word in segment.get("words", [])
        ]
        recognized = [entry for entry in recognized if entry[0].strip()]
        if not recognized:
            raise AlignmentError("whisper produced no word timings")
        script_words = text.split()
        if len(script_words) == len(recognized):
            # same word count: keep the script's spelling and punctuation
            recognized = [(word, start, end) for word, (_, start, end) in zip(script_words, recognized)]
        timeline = normalize_timeline(recognized)
        self.log.info(
            "whisper alignment completed",
            extra={"model": self.model_name, "words": len(timeline)},
        )
        return timeline
