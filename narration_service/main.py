from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import NoReturn

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from narration_service.clients.supabase_auth import SupabaseAuthClient
from narration_service.config import Settings, get_settings
from narration_service.errors import (
    AlignmentError,
    AuthError,
    DownloadError,
    DownloadFailure,
    InsufficientCredits,
    NotFoundError,
    PermissionDenied,
    PipelineError,
    RateLimited,
    StorageError,
    UpstreamError,
    ValidationError,
)
from narration_service.events.publisher import BillingEventPublisher
from narration_service.models.api import (
    AlignmentResponse,
    BatchAudioResponse,
    CreditsResponse,
    CreditTransactionInfo,
    MusicDeleteResponse,
    MusicImportRequest,
    MusicListResponse,
    MusicTrackResponse,
    SceneAudioRequest,
    SceneAudioResponse,
    SceneDone,
    SceneFailed,
    StoryAudioRequest,
)
from narration_service.models.domain import SceneState
from narration_service.services.audio_service import BatchAudioResult, SceneAudioService, SceneOutcome
from narration_service.services.credits import CreditLedger
from narration_service.services.music_service import MusicLibraryService
from narration_service.services.rate_limit import RateLimiter
from narration_service.storage.repository import (
    CreditTransactionRepository,
    MusicTrackRepository,
    SceneRepository,
    StoryRepository,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)

_stories = StoryRepository()
_scenes = SceneRepository()
_transactions = CreditTransactionRepository()
_tracks = MusicTrackRepository()
_limiter = RateLimiter()
_ledger: CreditLedger | None = None
_auth: SupabaseAuthClient | None = None
_events: BillingEventPublisher | None = None
_audio_service: SceneAudioService | None = None
_music_service: MusicLibraryService | None = None

DISCONNECT_POLL_SECONDS = 0.5


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if _events is not None:
        _events.close()


app = FastAPI(title="narration-service", lifespan=lifespan)


def get_auth_client(settings: Settings = Depends(get_settings)) -> SupabaseAuthClient:
    global _auth
    if _auth is None:
        _auth = SupabaseAuthClient(
            api_url=settings.supabase_url,
            api_key=settings.supabase_service_key,
            timeout=settings.auth_timeout,
        )
    return _auth


def require_user_id(
    authorization: str = Header(default=None),
    auth: SupabaseAuthClient = Depends(get_auth_client),
) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - Please log in")
    try:
        return auth.verify(token)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


def get_ledger(settings: Settings = Depends(get_settings)) -> CreditLedger:
    global _ledger
    if _ledger is None:
        _ledger = CreditLedger(_transactions, new_user_credits=settings.new_user_credits)
    return _ledger


def _build_events(settings: Settings) -> BillingEventPublisher | None:
    global _events
    if _events is None and settings.kafka_enabled and settings.kafka_billing_topic:
        try:
            _events = BillingEventPublisher(
                bootstrap_servers=settings.kafka_bootstrap_servers,
                topic=settings.kafka_billing_topic,
            )
        except Exception:  # pragma: no cover - best effort logging
            log.warning(
                "billing event publisher unavailable",
                extra={"topic": settings.kafka_billing_topic},
                exc_info=True,
            )
    return _events


def get_audio_service(
    settings: Settings = Depends(get_settings),
    ledger: CreditLedger = Depends(get_ledger),
) -> SceneAudioService:
    global _audio_service
    if _audio_service is None:
        _audio_service = SceneAudioService(
            stories=_stories,
            scenes=_scenes,
            ledger=ledger,
            limiter=_limiter,
            settings=settings,
            events=_build_events(settings),
        )
    return _audio_service


def get_music_service(settings: Settings = Depends(get_settings)) -> MusicLibraryService:
    global _music_service
    if _music_service is None:
        _music_service = MusicLibraryService(
            tracks=_tracks,
            stories=_stories,
            limiter=_limiter,
            settings=settings,
        )
    return _music_service


def _raise_http(exc: PipelineError) -> NoReturn:
    if isinstance(exc, RateLimited):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(exc), "retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc
    if isinstance(exc, InsufficientCredits):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": str(exc),
                "credits_needed": exc.credits_needed,
                "current_balance": exc.current_balance,
            },
        ) from exc
    if isinstance(exc, DownloadError):
        if exc.reason is DownloadFailure.TOO_LARGE:
            code = 413
        elif exc.is_security_rejection:
            code = status.HTTP_400_BAD_REQUEST
        else:
            code = status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, AuthError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, PermissionDenied):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (UpstreamError, AlignmentError)):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, StorageError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(exc)) from exc


def _scene_result(outcome: SceneOutcome) -> SceneDone | SceneFailed:
    if outcome.status is SceneState.DONE:
        return SceneDone(
            scene_id=outcome.scene_id,
            order=outcome.order,
            audio_url=outcome.audio_url or "",
            duration=outcome.duration or 0.0,
            voice_id=outcome.voice_id or "",
            word_timestamps=outcome.word_timestamps,
        )
    return SceneFailed(scene_id=outcome.scene_id, order=outcome.order, error=outcome.error or "failed")


def _batch_response(result: BatchAudioResult) -> BatchAudioResponse:
    return BatchAudioResponse(
        story_id=result.story_id,
        voice_id=result.voice_id,
        total_scenes=result.total_scenes,
        successful_scenes=result.successful_scenes,
        credits_charged=result.credits_charged,
        billing_error=result.billing_error,
        updated_scenes=[_scene_result(outcome) for outcome in result.outcomes],
    )


async def _watch_disconnect(request: Request, cancelled: threading.Event) -> None:
    while not cancelled.is_set():
        if await request.is_disconnected():
            log.info("client disconnected, cancelling remaining scenes", extra={"path": request.url.path})
            cancelled.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/audio:generate-all", response_model=BatchAudioResponse)
async def generate_all_audio(
    payload: StoryAudioRequest,
    request: Request,
    user_id: str = Depends(require_user_id),
    service: SceneAudioService = Depends(get_audio_service),
) -> BatchAudioResponse:
    cancelled = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancelled))
    try:
        result = await run_in_threadpool(
            service.generate_story_audio,
            user_id,
            payload.story_id,
            payload.voice_id,
            cancelled.is_set,
        )
    except PipelineError as exc:
        _raise_http(exc)
    finally:
        watcher.cancel()
    return _batch_response(result)


@app.post("/scenes/{scene_id}/audio:generate", response_model=SceneAudioResponse)
def generate_scene_audio(
    scene_id: str,
    payload: SceneAudioRequest,
    user_id: str = Depends(require_user_id),
    service: SceneAudioService = Depends(get_audio_service),
) -> SceneAudioResponse:
    try:
        outcome = service.generate_scene_audio(user_id, scene_id, payload.voice_id)
    except PipelineError as exc:
        _raise_http(exc)
    return SceneAudioResponse(scene=_scene_result(outcome))


@app.post("/scenes/{scene_id}/timestamps:align", response_model=AlignmentResponse)
def align_scene(
    scene_id: str,
    user_id: str = Depends(require_user_id),
    service: SceneAudioService = Depends(get_audio_service),
) -> AlignmentResponse:
    try:
        timestamps = service.realign_scene(user_id, scene_id)
    except PipelineError as exc:
        _raise_http(exc)
    return AlignmentResponse(scene_id=scene_id, word_timestamps=timestamps)


@app.post("/music:import", response_model=MusicTrackResponse, status_code=status.HTTP_201_CREATED)
def import_music(
    payload: MusicImportRequest,
    user_id: str = Depends(require_user_id),
    service: MusicLibraryService = Depends(get_music_service),
) -> MusicTrackResponse:
    try:
        track = service.import_track(
            user_id,
            name=payload.name,
            category=payload.category,
            source_url=payload.source_url,
            platform_reference=payload.platform_reference,
            description=payload.description,
        )
    except PipelineError as exc:
        _raise_http(exc)
    return MusicTrackResponse(track=track)


@app.get("/music", response_model=MusicListResponse)
def list_music(
    category: str | None = Query(default=None),
    user_id: str = Depends(require_user_id),
    service: MusicLibraryService = Depends(get_music_service),
) -> MusicListResponse:
    try:
        items = service.list_tracks(user_id, category)
    except PipelineError as exc:
        _raise_http(exc)
    return MusicListResponse(items=items)


@app.delete("/music/{track_id}", response_model=MusicDeleteResponse)
def delete_music(
    track_id: str,
    user_id: str = Depends(require_user_id),
    service: MusicLibraryService = Depends(get_music_service),
) -> MusicDeleteResponse:
    try:
        detached = service.delete_track(user_id, track_id)
    except PipelineError as exc:
        _raise_http(exc)
    return MusicDeleteResponse(track_id=track_id, stories_detached=detached)


@app.get("/credits", response_model=CreditsResponse)
def get_credits(
    include_history: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(require_user_id),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditsResponse:
    ledger.initialize(user_id)
    history = None
    if include_history:
        history = [
            CreditTransactionInfo(
                id=entry.id,
                amount=entry.amount,
                type=entry.type.value,
                description=entry.description,
                story_id=entry.story_id,
                created_at=entry.created_at,
            )
            for entry in ledger.history(user_id, limit=limit)
        ]
    return CreditsResponse(balance=ledger.get_balance(user_id), history=history)
