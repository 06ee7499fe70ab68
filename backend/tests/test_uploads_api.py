import asyncio

from starlette.datastructures import UploadFile

from conftest import AUTH, PUBLIC


def _init_body(size=10, chunks=2, filename="movie.mp4"):
    return {"filename": filename, "fileSize": size, "totalChunks": chunks, "contentType": "video/mp4"}


def test_upload_routes_require_bearer_secret(http) -> None:
    async def _run():
        async with http() as client:
            missing = await client.post("/upload/init", json=_init_body())
            wrong = await client.post("/upload/init", json=_init_body(), headers={"Authorization": "Bearer nope"})
            delete = await client.post("/delete", json={"key": "videos/a.mp4"})
        return missing, wrong, delete

    missing, wrong, delete = asyncio.run(_run())
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert delete.status_code == 401
    assert missing.json() == {"error": "Unauthorized"}


def test_init_rejects_oversized_file_before_opening_multipart(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            return await client.post("/upload/init", json=_init_body(size=4 * 1024**3 + 1, chunks=52), headers=AUTH)

    response = asyncio.run(_run())
    assert response.status_code == 413
    assert response.json()["maxSize"] == 4 * 1024**3
    assert blob_store.calls == []


def test_init_rejects_non_video_type_before_opening_multipart(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            html = await client.post(
                "/upload/init",
                json={"filename": "x.html", "fileSize": 200, "totalChunks": 2, "contentType": "text/html"},
                headers=AUTH,
            )
            rejected_calls = list(blob_store.calls)
            octet = await client.post(
                "/upload/init",
                json={"filename": "movie.mkv", "fileSize": 200, "totalChunks": 2, "contentType": "application/octet-stream"},
                headers=AUTH,
            )
        return html, rejected_calls, octet

    html, rejected_calls, octet = asyncio.run(_run())
    assert html.status_code == 415
    assert html.json()["receivedType"] == "text/html"
    assert rejected_calls == []
    assert octet.status_code == 200
    assert [call[0] for call in blob_store.calls] == ["create_multipart"]


def test_init_rejects_bad_chunk_counts(http) -> None:
    async def _run():
        async with http() as client:
            zero = await client.post("/upload/init", json=_init_body(chunks=0), headers=AUTH)
            too_many = await client.post("/upload/init", json=_init_body(size=20000, chunks=10001), headers=AUTH)
            malformed = await client.post("/upload/init", json={"filename": "a.mp4"}, headers=AUTH)
        return zero, too_many, malformed

    zero, too_many, malformed = asyncio.run(_run())
    assert zero.status_code == 400
    assert too_many.status_code == 400
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "Invalid request"


def test_chunked_upload_completes_only_when_every_part_arrived(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            init = (await client.post("/upload/init", json=_init_body(size=10, chunks=3), headers=AUTH)).json()
            upload_id = init["uploadId"]
            assert init["key"].startswith("videos/")
            assert init["key"].endswith("-movie.mp4")

            parts = {1: b"abcd", 2: b"efgh", 3: b"ij"}
            first = await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 1}, content=parts[1], headers=AUTH
            )
            await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 3}, content=parts[3], headers=AUTH
            )
            early = await client.post("/upload/complete", json={"uploadId": upload_id}, headers=AUTH)

            await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 2}, content=parts[2], headers=AUTH
            )
            done = await client.post("/upload/complete", json={"uploadId": upload_id}, headers=AUTH)
            again = await client.post("/upload/complete", json={"uploadId": upload_id}, headers=AUTH)
        return init, first, early, done, again

    init, first, early, done, again = asyncio.run(_run())

    assert first.status_code == 200
    assert first.json()["partNumber"] == 1
    assert first.json()["uploadedChunks"] == 1
    assert first.json()["totalChunks"] == 3

    assert early.status_code == 400
    assert early.json()["missingParts"] == [2]
    assert early.json()["uploadedChunks"] == 2

    assert done.status_code == 200
    body = done.json()
    assert body["key"] == init["key"]
    assert body["url"] == f"{PUBLIC}/{init['key']}"
    assert body["size"] == 10
    assert blob_store.objects[init["key"]][0] == b"abcdefghij"

    # The session is gone once completed
    assert again.status_code == 404


def test_resent_part_overwrites_instead_of_duplicating(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            upload_id = (await client.post("/upload/init", json=_init_body(size=4, chunks=2), headers=AUTH)).json()[
                "uploadId"
            ]
            params = {"uploadId": upload_id, "partNumber": 1}
            await client.put("/upload/chunk", params=params, content=b"xx", headers=AUTH)
            resent = await client.put("/upload/chunk", params=params, content=b"ab", headers=AUTH)
            await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 2}, content=b"cd", headers=AUTH
            )
            done = await client.post("/upload/complete", json={"uploadId": upload_id}, headers=AUTH)
        return resent, done

    resent, done = asyncio.run(_run())
    assert resent.json()["uploadedChunks"] == 1
    assert blob_store.objects[done.json()["key"]][0] == b"abcd"


def test_chunk_validation(http) -> None:
    async def _run():
        async with http() as client:
            upload_id = (await client.post("/upload/init", json=_init_body(size=4, chunks=2), headers=AUTH)).json()[
                "uploadId"
            ]
            out_of_range = await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 3}, content=b"ab", headers=AUTH
            )
            no_id = await client.put("/upload/chunk", params={"partNumber": 1}, content=b"ab", headers=AUTH)
            empty = await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 1}, content=b"", headers=AUTH
            )
            unknown = await client.put(
                "/upload/chunk", params={"uploadId": "missing", "partNumber": 1}, content=b"ab", headers=AUTH
            )
        return out_of_range, no_id, empty, unknown

    out_of_range, no_id, empty, unknown = asyncio.run(_run())
    assert out_of_range.status_code == 400
    assert no_id.status_code == 400
    assert empty.status_code == 400
    assert unknown.status_code == 404


def test_abort_discards_session_and_store_upload(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            upload_id = (await client.post("/upload/init", json=_init_body(size=4, chunks=2), headers=AUTH)).json()[
                "uploadId"
            ]
            aborted = await client.delete("/upload/abort", params={"uploadId": upload_id}, headers=AUTH)
            late = await client.put(
                "/upload/chunk", params={"uploadId": upload_id, "partNumber": 1}, content=b"ab", headers=AUTH
            )
        return aborted, late

    aborted, late = asyncio.run(_run())
    assert aborted.status_code == 204
    assert late.status_code == 404
    assert [call[0] for call in blob_store.calls] == ["create_multipart", "abort_multipart"]
    assert blob_store.multipart == {}


def test_direct_video_upload(http, blob_store) -> None:
    async def _run():
        async with http() as client:
            ok = await client.post(
                "/upload",
                files={"file": ("clip one.mp4", b"video-bytes", "video/mp4")},
                data={"type": "video"},
                headers=AUTH,
            )
            png = await client.post(
                "/upload",
                files={"file": ("cover.png", b"\x89PNG", "image/png")},
                data={"type": "video"},
                headers=AUTH,
            )
            missing = await client.post("/upload", data={"type": "video"}, headers=AUTH)
        return ok, png, missing

    ok, png, missing = asyncio.run(_run())
    assert ok.status_code == 200
    body = ok.json()
    assert body["key"].startswith("videos/")
    assert body["key"].endswith("-clip_one.mp4")
    assert body["url"] == f"{PUBLIC}/{body['key']}"
    assert body["size"] == len(b"video-bytes")
    assert blob_store.objects[body["key"]][0] == b"video-bytes"

    assert png.status_code == 415
    assert png.json()["receivedType"] == "image/png"
    assert missing.status_code == 400


def test_direct_upload_refuses_declared_oversize_without_reading(http, blob_store, monkeypatch) -> None:
    from lockstep import main

    reads = []
    original_read = UploadFile.read

    async def tracking_read(self, *args, **kwargs):
        reads.append(self.filename)
        return await original_read(self, *args, **kwargs)

    monkeypatch.setattr(main.settings, "max_video_size", 5)
    monkeypatch.setattr(UploadFile, "read", tracking_read)

    async def _run():
        async with http() as client:
            return await client.post(
                "/upload",
                files={"file": ("big.mp4", b"eleven byte", "video/mp4")},
                data={"type": "video"},
                headers=AUTH,
            )

    response = asyncio.run(_run())
    assert response.status_code == 413
    assert response.json()["maxSize"] == 5
    assert response.json()["actualSize"] == 11
    assert reads == []
    assert blob_store.calls == []


def test_srt_subtitles_are_stored_as_webvtt(http, blob_store) -> None:
    srt = b"1\r\n00:00:01,000 --> 00:00:02,500\r\nHi\r\n"

    async def _run():
        async with http() as client:
            srt_reply = await client.post(
                "/upload",
                files={"file": ("movie.srt", srt, "application/x-subrip")},
                data={"type": "subtitle"},
                headers=AUTH,
            )
            bad = await client.post(
                "/upload",
                files={"file": ("movie.txt", b"hello", "text/plain")},
                data={"type": "subtitle"},
                headers=AUTH,
            )
        return srt_reply, bad

    srt_reply, bad = asyncio.run(_run())
    assert srt_reply.status_code == 200
    body = srt_reply.json()
    assert body["key"].startswith("subtitles/")
    assert body["key"].endswith("-movie.vtt")
    assert body["type"] == "text/vtt"
    assert blob_store.objects[body["key"]][0] == b"WEBVTT\n\n1\n00:00:01.000 --> 00:00:02.500\nHi\n"
    assert bad.status_code == 415


def test_streaming_honours_range_requests(http, blob_store) -> None:
    key = "videos/1700000000000-abc123-clip.mp4"

    async def _run():
        await blob_store.put(key, b"0123456789", "video/mp4", {})
        async with http() as client:
            partial = await client.get(f"/{key}", headers={"Range": "bytes=2-5"})
            suffix = await client.get(f"/{key}", headers={"Range": "bytes=-3"})
            whole = await client.get(f"/{key}")
            malformed = await client.get(f"/{key}", headers={"Range": "pages=1"})
            beyond = await client.get(f"/{key}", headers={"Range": "bytes=20-"})
            missing = await client.get("/videos/nothing-here.mp4")
        return partial, suffix, whole, malformed, beyond, missing

    partial, suffix, whole, malformed, beyond, missing = asyncio.run(_run())
    assert partial.status_code == 206
    assert partial.content == b"2345"
    assert partial.headers["content-range"] == "bytes 2-5/10"
    assert partial.headers["accept-ranges"] == "bytes"

    assert suffix.status_code == 206
    assert suffix.content == b"789"

    assert whole.status_code == 200
    assert whole.content == b"0123456789"
    assert whole.headers["content-type"].startswith("video/mp4")

    assert malformed.status_code == 200
    assert beyond.status_code == 416
    assert missing.status_code == 404


def test_delete_rejects_traversal_and_missing_objects(http, blob_store) -> None:
    key = "videos/1700000000000-abc123-clip.mp4"

    async def _run():
        await blob_store.put(key, b"data", "video/mp4", {})
        async with http() as client:
            traversal = await client.post("/delete", json={"key": "videos/../../etc/passwd"}, headers=AUTH)
            foreign = await client.post("/delete", json={"key": "secrets/x"}, headers=AUTH)
            missing = await client.post("/delete", json={"key": "videos/missing.mp4"}, headers=AUTH)
            deleted = await client.post("/delete", json={"key": key}, headers=AUTH)
        return traversal, foreign, missing, deleted

    traversal, foreign, missing, deleted = asyncio.run(_run())
    assert traversal.status_code == 400
    assert foreign.status_code == 400
    assert missing.status_code == 404
    assert missing.json()["success"] is False
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True, "message": "Video deleted", "key": key}
    assert [call for call in blob_store.calls if call[0] == "delete"] == [("delete", key)]


def test_list_pages_through_videos(http, blob_store) -> None:
    async def _run():
        for name in ("a", "b", "c"):
            await blob_store.put(f"videos/1-abc123-{name}.mp4", b"x", "video/mp4", {})
        await blob_store.put("subtitles/1-abc123-a.vtt", b"x", "text/vtt", {})
        async with http() as client:
            first = (await client.get("/list", params={"limit": 2})).json()
            second = (await client.get("/list", params={"limit": 2, "cursor": first["cursor"]})).json()
        return first, second

    first, second = asyncio.run(_run())
    assert [v["key"] for v in first["videos"]] == ["videos/1-abc123-a.mp4", "videos/1-abc123-b.mp4"]
    assert first["truncated"] is True
    assert first["videos"][0]["url"] == f"{PUBLIC}/videos/1-abc123-a.mp4"
    assert [v["key"] for v in second["videos"]] == ["videos/1-abc123-c.mp4"]
    assert second["truncated"] is False
    assert second["cursor"] is None
