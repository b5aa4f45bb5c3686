import pytest
from fastapi.testclient import TestClient

from narration_service.main import app, get_audio_service, get_auth_client, get_ledger, get_music_service
from narration_service.models.domain import TransactionType
from narration_service.services.rate_limit import RateLimits

from conftest import FakeAuth

HEADERS = {"Authorization": "Bearer token-1"}

client = TestClient(app)


@pytest.fixture(autouse=True)
def wired(audio_service, music_service, ledger):
    app.dependency_overrides[get_auth_client] = lambda: FakeAuth({"token-1": "user-1", "token-2": "user-2"})
    app.dependency_overrides[get_audio_service] = lambda: audio_service
    app.dependency_overrides[get_music_service] = lambda: music_service
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield
    app.dependency_overrides.clear()


def test_health_is_public():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer wrong"}])
def test_missing_or_invalid_bearer_is_401(headers, runner):
    resp = client.post(
        "/music:import",
        json={"name": "Loop", "platform_reference": "dQw4w9WgXcQ"},
        headers=headers,
    )
    assert resp.status_code == 401
    assert runner.calls == []


def test_generate_all_audio_happy_path(story_with_scenes):
    resp = client.post(
        "/audio:generate-all",
        json={"story_id": story_with_scenes.id, "voice_id": "shimmer"},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_scenes"] == 3
    assert body["successful_scenes"] == 3
    assert body["credits_charged"] == 3
    assert body["voice_id"] == "shimmer"
    assert [scene["status"] for scene in body["updated_scenes"]] == ["done", "done", "done"]
    assert body["updated_scenes"][0]["word_timestamps"][0]["word"] == "The"

    credits = client.get("/credits", params={"include_history": True}, headers=HEADERS)
    assert credits.json()["balance"] == 27
    assert {entry["type"] for entry in credits.json()["history"]} == {"free_signup", "deduction_audio"}


def test_generate_all_audio_reports_failed_scenes(story_with_scenes, speech):
    speech.fail_on.add("Wind moved the trees")
    resp = client.post("/audio:generate-all", json={"story_id": story_with_scenes.id}, headers=HEADERS)
    body = resp.json()
    assert body["successful_scenes"] == 2
    assert body["credits_charged"] == 2
    failed = body["updated_scenes"][1]
    assert failed["status"] == "failed"
    assert failed["scene_id"] == "scene-2"
    assert "error" in failed


def test_insufficient_credits_is_402(story_with_scenes, ledger):
    ledger.initialize("user-1")
    ledger.deduct("user-1", 30, TransactionType.DEDUCTION_VIDEO, "spent")

    resp = client.post("/audio:generate-all", json={"story_id": story_with_scenes.id}, headers=HEADERS)

    assert resp.status_code == 402
    detail = resp.json()["detail"]
    assert detail["credits_needed"] == 3
    assert detail["current_balance"] == 0


def test_foreign_story_is_403_and_missing_is_404(story_with_scenes):
    other = client.post(
        "/audio:generate-all",
        json={"story_id": story_with_scenes.id},
        headers={"Authorization": "Bearer token-2"},
    )
    assert other.status_code == 403
    missing = client.post("/audio:generate-all", json={"story_id": "nope"}, headers=HEADERS)
    assert missing.status_code == 404


def test_single_scene_generation_and_alignment(story_with_scenes):
    resp = client.post("/scenes/scene-3/audio:generate", json={"voice_id": "coral"}, headers=HEADERS)
    assert resp.status_code == 200
    scene = resp.json()["scene"]
    assert scene["voice_id"] == "coral"
    assert scene["audio_url"].startswith("https://cdn.test/audio/scene-scene-3-")

    aligned = client.post("/scenes/scene-3/timestamps:align", headers=HEADERS)
    assert aligned.status_code == 200
    assert [word["word"] for word in aligned.json()["word_timestamps"]] == ["Morning", "came", "at", "last"]


def test_alignment_without_audio_is_400(story_with_scenes):
    resp = client.post("/scenes/scene-1/timestamps:align", headers=HEADERS)
    assert resp.status_code == 400


def test_upstream_failure_on_single_scene_is_502(story_with_scenes, speech):
    speech.fail_on.add("The moon rose slowly")
    resp = client.post("/scenes/scene-1/audio:generate", json={}, headers=HEADERS)
    assert resp.status_code == 502


def test_music_import_rate_limit_returns_429_without_download(limiter, music_service, runner):
    for _ in range(music_service.import_policy.max_requests):
        limiter.check("user-1", music_service.import_policy)

    resp = client.post(
        "/music:import",
        json={"name": "Loop", "platform_reference": "dQw4w9WgXcQ"},
        headers=HEADERS,
    )

    assert resp.status_code == 429
    retry_after = resp.json()["detail"]["retry_after"]
    assert 0 < retry_after <= 3600
    assert resp.headers["Retry-After"] == str(retry_after)
    assert runner.calls == []


def test_audio_rate_limit_returns_429(limiter, story_with_scenes):
    for _ in range(RateLimits.AUDIO_GENERATION.max_requests):
        limiter.check("user-1", RateLimits.AUDIO_GENERATION)
    resp = client.post("/audio:generate-all", json={"story_id": story_with_scenes.id}, headers=HEADERS)
    assert resp.status_code == 429


def test_music_import_list_and_delete():
    created = client.post(
        "/music:import",
        json={"name": "Theme", "platform_reference": "https://www.youtube.com/watch?v=dQw4w9WgXcQ", "category": "epic"},
        headers=HEADERS,
    )
    assert created.status_code == 400

    created = client.post(
        "/music:import",
        json={"name": "Theme", "platform_reference": "https://www.youtube.com/watch?v=dQw4w9WgXcQ", "category": "upbeat"},
        headers=HEADERS,
    )
    assert created.status_code == 201
    track_id = created.json()["track"]["id"]

    listing = client.get("/music", headers=HEADERS)
    assert [item["id"] for item in listing.json()["items"]] == [track_id]
    assert client.get("/music", headers={"Authorization": "Bearer token-2"}).json()["items"] == []

    forbidden = client.delete(f"/music/{track_id}", headers={"Authorization": "Bearer token-2"})
    assert forbidden.status_code == 403
    deleted = client.delete(f"/music/{track_id}", headers=HEADERS)
    assert deleted.status_code == 200
    assert client.delete(f"/music/{track_id}", headers=HEADERS).status_code == 404


def test_blocked_and_oversized_imports(runner):
    blocked = client.post(
        "/music:import",
        json={"name": "Meta", "source_url": "http://169.254.169.254/latest/meta-data"},
        headers=HEADERS,
    )
    assert blocked.status_code == 400

    runner.payload = b"x" * 4096
    too_big = client.post("/music:import", json={"name": "Huge", "platform_reference": "dQw4w9WgXcQ"}, headers=HEADERS)
    assert too_big.status_code == 413


def test_credits_initializes_new_users():
    resp = client.get("/credits", headers={"Authorization": "Bearer token-2"})
    assert resp.status_code == 200
    assert resp.json() == {"balance": 30, "history": None}


def test_oversized_import_maps_to_413_without_deprecation_warnings(runner, recwarn):
    runner.payload = b"x" * 4096
    resp = client.post("/music:import", json={"name": "Huge", "platform_reference": "dQw4w9WgXcQ"}, headers=HEADERS)

    assert resp.status_code == 413
    assert not [warning for warning in recwarn if "413" in str(warning.message)]
