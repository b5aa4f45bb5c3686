import json

import httpx
import pytest
from botocore.stub import ANY, Stubber

from narration_service.clients.s3_storage import S3StorageClient
from narration_service.clients.supabase_auth import SupabaseAuthClient
from narration_service.clients.supabase_storage import SupabaseStorageClient
from narration_service.clients.tts import OpenAISpeechClient
from narration_service.clients.whisper import normalize_timeline
from narration_service.config import Settings
from narration_service.errors import AuthError, UpstreamError
from narration_service.storage.artifacts import ArtifactReplacer, build_object_store

from conftest import FakeClock


def test_supabase_storage_requests():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, request.content))
        if request.url.path == "/storage/v1/object/list/audio":
            return httpx.Response(200, json=[{"name": "scene-9-100.mp3", "id": "1", "metadata": {"size": 3}}])
        return httpx.Response(200, json={})

    client = SupabaseStorageClient(
        api_url="https://proj.supabase.co",
        public_url=None,
        bucket="audio",
        api_key="service",
        transport=httpx.MockTransport(handler),
    )

    items = client.list_files("scene-9-")
    client.upload_bytes("scene-9-200.mp3", b"x", "audio/mpeg")
    client.delete_files(["scene-9-100.mp3"])

    assert items[0]["key"] == "scene-9-100.mp3"
    assert items[0]["url"] == "https://proj.supabase.co/storage/v1/object/public/audio/scene-9-100.mp3"
    assert [(method, path) for method, path, _ in seen] == [
        ("POST", "/storage/v1/object/list/audio"),
        ("POST", "/storage/v1/object/audio/scene-9-200.mp3"),
        ("DELETE", "/storage/v1/object/audio"),
    ]
    assert json.loads(seen[-1][2]) == {"prefixes": ["scene-9-100.mp3"]}


def test_s3_replace_uploads_before_deleting_stale_variant():
    clock = FakeClock()
    client = S3StorageClient(
        bucket="audio",
        access_key="key",
        secret_key="secret",
        endpoint_url="https://s3.test",
        region_name="us-east-1",
        public_url="https://cdn.test/audio",
    )
    stubber = Stubber(client._client)
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "scene-9-100.mp3", "Size": 3}], "IsTruncated": False},
        {"Bucket": "audio", "Prefix": "scene-9-"},
    )
    stubber.add_response(
        "put_object",
        {},
        {
            "Bucket": "audio",
            "Key": f"scene-9-{clock.now}.mp3",
            "Body": ANY,
            "ContentType": "audio/mpeg",
            "CacheControl": ANY,
        },
    )
    stubber.add_response(
        "delete_objects",
        {},
        {"Bucket": "audio", "Delete": {"Objects": [{"Key": "scene-9-100.mp3"}], "Quiet": True}},
    )

    with stubber:
        artifact = ArtifactReplacer(client, clock=clock).replace("scene-9", b"new", "audio/mpeg")

    stubber.assert_no_pending_responses()
    assert artifact.url == f"https://cdn.test/audio/scene-9-{clock.now}.mp3"


def test_build_object_store_selects_backend():
    s3 = build_object_store(Settings(_env_file=None, storage_backend="s3"), "audio")
    supabase = build_object_store(Settings(_env_file=None, storage_backend="supabase"), "audio")
    assert isinstance(s3, S3StorageClient)
    assert isinstance(supabase, SupabaseStorageClient)
    with pytest.raises(ValueError):
        build_object_store(Settings(_env_file=None, storage_backend="ftp"), "audio")


def test_speech_client_posts_mp3_request():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers["authorization"]
        return httpx.Response(200, content=b"ID3-audio")

    client = OpenAISpeechClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    assert client.synthesize("Hello there", "nova") == b"ID3-audio"
    assert captured["body"] == {
        "model": "tts-1-hd",
        "input": "Hello there",
        "voice": "nova",
        "response_format": "mp3",
        "speed": 1.0,
    }
    assert captured["auth"] == "Bearer sk-test"


def test_speech_client_surfaces_upstream_status():
    client = OpenAISpeechClient(
        api_key="sk-test",
        transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down")),
    )
    with pytest.raises(UpstreamError) as excinfo:
        client.synthesize("Hello", "alloy")
    assert excinfo.value.status_code == 429
    assert excinfo.value.body == "slow down"

    with pytest.raises(UpstreamError):
        OpenAISpeechClient(api_key="").synthesize("Hello", "alloy")


def test_auth_client_verifies_bearer_token():
    def handler(request):
        if request.headers["authorization"] == "Bearer good":
            return httpx.Response(200, json={"id": "user-42"})
        return httpx.Response(401, json={"msg": "invalid JWT"})

    client = SupabaseAuthClient(
        api_url="https://proj.supabase.co",
        api_key="anon",
        transport=httpx.MockTransport(handler),
    )
    assert client.verify("good") == "user-42"
    with pytest.raises(AuthError):
        client.verify("bad")
    with pytest.raises(AuthError):
        client.verify("")


def test_normalize_timeline_enforces_monotonic_starts():
    timeline = normalize_timeline([(" Hello", 0.5, 0.9), ("", 1.0, 1.1), ("world", 0.4, 0.3), ("again", 2.0, 2.4)])
    assert [(word.word, word.start, word.end) for word in timeline] == [
        ("Hello", 0.5, 0.9),
        ("world", 0.5, 0.5),
        ("again", 2.0, 2.4),
    ]
