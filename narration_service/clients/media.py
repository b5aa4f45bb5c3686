from __future__ import annotations

from moviepy import AudioFileClip


def probe_duration(path: str) -> float:
    clip = AudioFileClip(path)
    try:
        return float(clip.duration or 0.0)
    finally:
        clip.close()
