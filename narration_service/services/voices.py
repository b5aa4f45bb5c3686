from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from narration_service.errors import ValidationError


class Voice(str, Enum):
    ALLOY = "alloy"
    ECHO = "echo"
    FABLE = "fable"
    ONYX = "onyx"
    NOVA = "nova"
    SHIMMER = "shimmer"
    ASH = "ash"
    CORAL = "coral"
    SAGE = "sage"


# ElevenLabs voice ids stored on older stories.
LEGACY_VOICE_ALIASES: dict[str, Voice] = {
    "21m00Tcm4TlvDq8ikWAM": Voice.ALLOY,  # Rachel
    "EXAVITQu4vr4xnSDxMaL": Voice.NOVA,  # Bella
    "ErXwobaYiN019PkySvjV": Voice.SHIMMER,  # Antoni
    "MF3mGyEYCl7XYWbV9V6O": Voice.FABLE,  # Elli
    "TxGEqnHWrfWFTfGW9XjX": Voice.ECHO,  # Josh
    "VR6AewLTigWG4xSOukaG": Voice.ONYX,  # Arnold
    "pNInz6obpgDQGcFmaJgB": Voice.FABLE,  # Adam
    "yoZ06aMxZJJ28mfd3POQ": Voice.NOVA,  # Sam
}


class VoiceCatalog:
    def __init__(
        self,
        default_voice: str = Voice.ALLOY.value,
        fallback_enabled: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.default_voice = Voice(default_voice)
        self.fallback_enabled = fallback_enabled
        self.log = logger or logging.getLogger(__name__)

    def resolve(self, voice_id: str | None) -> Voice:
        requested = (voice_id or "").strip()
        if not requested or requested == "default":
            return self.default_voice
        try:
            return Voice(requested.lower())
        except ValueError:
            pass
        legacy = LEGACY_VOICE_ALIASES.get(requested)
        if legacy is not None:
            self.log.info("legacy voice id translated", extra={"voice_id": requested, "voice": legacy.value})
            return legacy
        if not self.fallback_enabled:
            raise ValidationError(f"Unknown voice: {requested}")
        self.log.warning(
            "unknown voice id, using fallback voice",
            extra={"voice_id": requested, "voice": self.default_voice.value},
        )
        return self.default_voice
