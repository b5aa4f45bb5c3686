import subprocess
from pathlib import Path

import pytest

from narration_service.clients.fetcher import SecureFetcher
from narration_service.clients.supabase_storage import SupabaseStorageClient
from narration_service.config import Settings
from narration_service.errors import AlignmentError, AuthError, UpstreamError
from narration_service.models.domain import Scene, Story, WordTimestamp
from narration_service.services.audio_service import SceneAudioService
from narration_service.services.credits import CreditLedger
from narration_service.services.music_service import MusicLibraryService
from narration_service.services.rate_limit import RateLimiter
from narration_service.storage.artifacts import ArtifactReplacer
from narration_service.storage.repository import (
    CreditTransactionRepository,
    MusicTrackRepository,
    SceneRepository,
    StoryRepository,
)


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSpeech:
    def __init__(self, fail_on=None) -> None:
        self.fail_on = set(fail_on or [])
        self.calls = []

    def enabled(self) -> bool:
        return True

    def synthesize(self, text, voice, model=None) -> bytes:
        self.calls.append((text, voice))
        if text in self.fail_on:
            raise UpstreamError(500, "synthesis exploded")
        return f"ID3-{voice}-{text}".encode("utf-8")


class FakeAligner:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def align(self, audio_path, text):
        self.calls.append((audio_path, text))
        if self.fail:
            raise AlignmentError("aligner unavailable")
        assert Path(audio_path).exists()
        return [
            WordTimestamp(word=word, start=index * 0.5, end=index * 0.5 + 0.4)
            for index, word in enumerate(text.split())
        ]


class FakeAuth:
    def __init__(self, tokens) -> None:
        self.tokens = dict(tokens)

    def verify(self, token: str) -> str:
        user_id = self.tokens.get(token)
        if not user_id:
            raise AuthError("Unauthorized - Invalid session")
        return user_id


class FakeRunner:
    """Stands in for ``subprocess.run`` when driving the downloader."""

    def __init__(self, outcomes=None, payload: bytes = b"ID3-downloaded-audio") -> None:
        self.outcomes = list(outcomes or [0])
        self.payload = payload
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append((list(args), kwargs))
        returncode = self.outcomes.pop(0) if self.outcomes else 0
        if returncode == 0:
            template = args[args.index("-o") + 1]
            Path(template.replace("%(ext)s", "mp3")).write_bytes(self.payload)
        return subprocess.CompletedProcess(args, returncode, stdout="", stderr="ERROR: boom" if returncode else "")


def public_resolver(hostname):
    return ["93.184.216.34"]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        audio_credit_cost=1,
        new_user_credits=30,
        batch_concurrency=1,
        max_import_bytes=1024,
        kafka_enabled=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repos():
    return {
        "stories": StoryRepository(),
        "scenes": SceneRepository(),
        "transactions": CreditTransactionRepository(),
        "tracks": MusicTrackRepository(),
    }


@pytest.fixture
def ledger(repos):
    return CreditLedger(repos["transactions"], new_user_credits=30)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def audio_store():
    return SupabaseStorageClient(api_url="", public_url="https://cdn.test", bucket="audio", api_key="")


@pytest.fixture
def music_store():
    return SupabaseStorageClient(api_url="", public_url="https://cdn.test", bucket="background_music", api_key="")


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def aligner():
    return FakeAligner()


@pytest.fixture
def audio_service(repos, ledger, limiter, settings, speech, aligner, audio_store, clock):
    return SceneAudioService(
        stories=repos["stories"],
        scenes=repos["scenes"],
        ledger=ledger,
        limiter=limiter,
        settings=settings,
        tts=speech,
        aligner=aligner,
        storage=audio_store,
        replacer=ArtifactReplacer(audio_store, clock=clock),
        probe=lambda path: 2.5,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def fetcher(runner):
    return SecureFetcher(max_bytes=1024, resolver=public_resolver, runner=runner)


@pytest.fixture
def music_service(repos, limiter, settings, fetcher, music_store, clock):
    return MusicLibraryService(
        tracks=repos["tracks"],
        stories=repos["stories"],
        limiter=limiter,
        settings=settings,
        fetcher=fetcher,
        replacer=ArtifactReplacer(music_store, clock=clock),
        probe=lambda path: 95.0,
    )


@pytest.fixture
def story_with_scenes(repos):
    story = repos["stories"].save(Story(id="story-1", user_id="user-1", title="Night walk"))
    texts = ["The moon rose slowly", "Wind moved the trees", "Morning came at last"]
    for index, text in enumerate(texts):
        repos["scenes"].save(Scene(id=f"scene-{index + 1}", story_id=story.id, order=index, text=text))
    return story
