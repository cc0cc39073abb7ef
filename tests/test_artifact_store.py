import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from tubequeue.artifact_store import HttpArtifactStore, LocalArtifactStore, artifact_key, content_type_for
from tubequeue.exceptions import StorageError


def test_keys_and_content_types():
    assert artifact_key("job-1", "Demo.mp4") == "job-1/Demo.mp4"
    assert content_type_for("Demo.MP4") == "video/mp4"
    assert content_type_for("Demo.en.vtt") == "text/vtt"
    assert content_type_for("Demo.info.json") == "application/octet-stream"


def test_local_store_upload_and_delete(tmp_path):
    source = tmp_path / "Demo.mp4"
    source.write_bytes(b"0123456789" * 300_000)
    store = LocalArtifactStore(tmp_path / "artifacts")

    stored = asyncio.run(store.upload("job-1", source))
    assert stored.key == "job-1/Demo.mp4"
    assert stored.size == 3_000_000
    assert stored.content_type == "video/mp4"
    assert store.resolve(stored.key).read_bytes() == source.read_bytes()

    assert asyncio.run(store.delete_prefix("job-1")) == 1
    assert not (tmp_path / "artifacts" / "job-1").exists()
    assert asyncio.run(store.delete_prefix("job-1")) == 0


def test_local_store_upload_missing_file(tmp_path):
    store = LocalArtifactStore(tmp_path / "artifacts")
    with pytest.raises(StorageError):
        asyncio.run(store.upload("job-1", tmp_path / "missing.mp4"))


def test_local_store_public_urls(tmp_path):
    assert LocalArtifactStore(tmp_path, "https://cdn.example/media/").public_url("job 1/a.mp4") == \
        "https://cdn.example/media/job%201/a.mp4"
    assert LocalArtifactStore(tmp_path).public_url("job/a.mp4").startswith("file://")


def test_http_store_requires_url():
    with pytest.raises(StorageError):
        HttpArtifactStore("", "downloads", "key")


def make_storage_app(objects, requests, fail_uploads=False):
    async def list_objects(request):
        requests.append(("list", request.match_info["bucket"], await request.json()))
        prefix = (await request.json())["prefix"]
        return web.json_response([{"name": key.split("/", 1)[1]} for key in objects if key.startswith(prefix + "/")])

    async def upload(request):
        if fail_uploads:
            return web.Response(status=500, text="disk full")
        requests.append(("upload", request.headers["Authorization"], request.headers["Content-Type"]))
        objects[request.match_info["key"]] = await request.read()
        return web.json_response({"Key": request.match_info["key"]})

    async def delete(request):
        payload = await request.json()
        requests.append(("delete", payload["prefixes"]))
        for key in payload["prefixes"]:
            objects.pop(key, None)
        return web.json_response([])

    app = web.Application()
    app.router.add_post("/storage/v1/object/list/{bucket}", list_objects)
    app.router.add_post("/storage/v1/object/{bucket}/{key:.+}", upload)
    app.router.add_delete("/storage/v1/object/{bucket}", delete)
    return app


def test_http_store_upload_list_and_delete(tmp_path):
    source = tmp_path / "Demo.en.vtt"
    source.write_text("WEBVTT\n", encoding="utf-8")
    objects, requests = {}, []

    async def scenario():
        async with test_utils.TestServer(make_storage_app(objects, requests)) as server:
            store = HttpArtifactStore(str(server.make_url("/")), "downloads", "secret")
            stored = await store.upload("job-1", source)
            assert objects["job-1/Demo.en.vtt"] == b"WEBVTT\n"
            removed = await store.delete_prefix("job-1")
            return stored, removed

    stored, removed = asyncio.run(scenario())
    assert stored.size == 7
    assert removed == 1
    assert objects == {}
    assert requests[0] == ("upload", "Bearer secret", "text/vtt")
    assert requests[1] == ("list", "downloads", {"prefix": "job-1", "limit": 1000})
    assert requests[2] == ("delete", ["job-1/Demo.en.vtt"])


def test_http_store_upload_error(tmp_path):
    source = tmp_path / "Demo.mp4"
    source.write_bytes(b"data")

    async def scenario():
        async with test_utils.TestServer(make_storage_app({}, [], fail_uploads=True)) as server:
            store = HttpArtifactStore(str(server.make_url("/")), "downloads", "secret")
            await store.upload("job-1", source)

    with pytest.raises(StorageError, match="HTTP 500"):
        asyncio.run(scenario())


def test_http_store_public_url():
    store = HttpArtifactStore("https://project.example.co/", "downloads", "k")
    assert store.public_url("job-1/Demo.mp4") == \
        "https://project.example.co/storage/v1/object/public/downloads/job-1/Demo.mp4"
