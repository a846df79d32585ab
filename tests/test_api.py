"""
API endpoint tests.
"""
import gzip
import time

import pytest

from app.api.files import resolve_file_headers
from app.core.artifact_store import artifact_store, public_url
from app.core.jobs import job_store
from app.schemas.build import BuildTarget


def upload(client, data, name="Runner"):
    return client.post(
        "/templates",
        params={"name": name},
        content=data,
        headers={"content-type": "application/zip"},
    )


def wait_for_terminal(client, job_id, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/builds/{job_id}").json()
        if data["status"] in ("ready", "failed"):
            return data
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} still not finished")


@pytest.fixture
def template_id(client, project_zip):
    response = upload(client, project_zip())
    assert response.status_code == 201
    return response.json()["id"]


class TestHealthEndpoint:
    """Tests for health and metadata endpoints."""

    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_meta(self, client):
        data = client.get("/meta").json()
        assert data["service"] == "template-build-service"
        assert data["build_tool"]["configured"] is False
        assert data["draft_generator"]["enabled"] is False
        assert data["targets"] == ["webgl", "android_apk"]
        assert data["computed_base_url"] == "http://testserver"

    def test_meta_honours_forwarded_headers(self, client):
        data = client.get(
            "/meta", headers={"x-forwarded-proto": "https", "x-forwarded-host": "builds.example.com"}
        ).json()
        assert data["computed_base_url"] == "https://builds.example.com"


class TestMetricsEndpoint:
    """Tests for metrics endpoint."""

    def test_metrics_returns_prometheus_format(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "builder_requests_total" in response.text
        assert "builder_build_submitted_total" in response.text


# =============================================================================
# Templates
# =============================================================================

class TestTemplates:
    """Tests for template upload and listing."""

    def test_upload(self, client, project_zip):
        data = project_zip()
        response = upload(client, data, name="  Runner  ")
        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Runner"
        assert body["size_bytes"] == len(data)
        assert len(body["sha256"]) == 64

        fetched = client.get(f"/templates/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == body["id"]

    def test_upload_rejects_non_zip(self, client):
        response = upload(client, b"this is not a zip archive")
        assert response.status_code == 400

    def test_upload_rejects_empty_body(self, client):
        response = upload(client, b"")
        assert response.status_code == 400

    def test_upload_requires_name(self, client, project_zip):
        response = client.post("/templates", content=project_zip())
        assert response.status_code == 422

    def test_list_most_recent_first(self, client, project_zip):
        first = upload(client, project_zip(), name="first").json()
        second = upload(client, project_zip(), name="second").json()
        items = client.get("/templates", params={"limit": 200}).json()["items"]
        ids = [item["id"] for item in items]
        assert ids.index(second["id"]) < ids.index(first["id"])

    def test_unknown_template(self, client):
        assert client.get("/templates/missing").status_code == 404


# =============================================================================
# Builds
# =============================================================================

class TestBuilds:
    """Tests for submitting and polling builds (no build tool configured)."""

    def test_submit_and_poll(self, client, template_id):
        response = client.post(
            "/builds", json={"template_id": template_id, "config": {"speed": 500}}
        )
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["build_target"] == "webgl"

        final = wait_for_terminal(client, body["job_id"])
        assert final["status"] == "failed"
        assert "UNITY_EDITOR_PATH" in final["error"]
        assert final["config"]["speed"] == 20.0
        assert final["result_ref"] is None
        assert "tool_build" in final["timings"]["steps"]

    def test_submit_android_alias(self, client, template_id):
        response = client.post("/builds", json={"template_id": template_id, "build_target": "android"})
        assert response.status_code == 202
        assert response.json()["build_target"] == "android_apk"
        wait_for_terminal(client, response.json()["job_id"])

    def test_submit_unknown_target(self, client, template_id):
        response = client.post("/builds", json={"template_id": template_id, "build_target": "ios"})
        assert response.status_code == 422

    def test_submit_unknown_template(self, client):
        response = client.post("/builds", json={"template_id": "does-not-exist"})
        assert response.status_code == 404

    def test_submit_corrupted_template(self, client, template_id):
        client.portal.call(artifact_store.put, f"templates/{template_id}.zip", b"XX not a zip")
        response = client.post("/builds", json={"template_id": template_id})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid zip file"

    def test_draft_without_generator_uses_fallback(self, client, template_id):
        response = client.post(
            "/builds/draft", json={"prompt": "a cozy farm", "template_id": template_id}
        )
        assert response.status_code == 202
        final = wait_for_terminal(client, response.json()["job_id"])
        assert final["name"] == "AI Game"
        assert final["description"] == "a cozy farm"
        assert final["draft"]["fallback"] is True

    def test_draft_blank_prompt(self, client, template_id):
        response = client.post("/builds/draft", json={"prompt": "   ", "template_id": template_id})
        assert response.status_code == 422

    def test_unknown_job(self, client):
        assert client.get("/builds/missing").status_code == 404
        assert client.post("/builds/missing/cancel").status_code == 404
        assert client.post("/builds/missing/rebuild").status_code == 404
        assert client.put("/builds/missing/config", json={"config": {}}).status_code == 404
        assert client.get("/builds/missing/runtime-config").status_code == 404
        assert client.get("/builds/missing/download-url").status_code == 404

    def test_list_filters_by_status(self, client, template_id):
        job_id = client.post("/builds", json={"template_id": template_id}).json()["job_id"]
        wait_for_terminal(client, job_id)

        data = client.get("/builds", params={"status": "failed", "limit": 100}).json()
        assert all(item["status"] == "failed" for item in data["items"])
        assert job_id in [item["job_id"] for item in data["items"]]
        assert data["limit"] == 100


class TestJobCommands:
    """Tests for cancel, rebuild, config and download URLs."""

    def test_cancel_finished_job_is_noop(self, client, template_id):
        job_id = client.post("/builds", json={"template_id": template_id}).json()["job_id"]
        wait_for_terminal(client, job_id)

        response = client.post(f"/builds/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancelled"] is False

    def test_cancel_queued_job(self, client, template_id):
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        response = client.post(f"/builds/{job.id}/cancel")
        assert response.status_code == 200
        body = response.json()
        assert body["cancelled"] is True
        assert body["status"] == "failed"
        assert client.get(f"/builds/{job.id}").json()["error"] == "Cancelled by user"

    def test_rebuild_queued_job_conflicts(self, client, template_id):
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        assert client.post(f"/builds/{job.id}/rebuild").status_code == 409
        client.post(f"/builds/{job.id}/cancel")

    def test_rebuild_failed_job(self, client, template_id):
        job_id = client.post("/builds", json={"template_id": template_id}).json()["job_id"]
        wait_for_terminal(client, job_id)

        response = client.post(f"/builds/{job_id}/rebuild", json={"build_target": "android_apk"})
        assert response.status_code == 202
        assert response.json()["job_id"] == job_id
        assert response.json()["build_target"] == "android_apk"
        final = wait_for_terminal(client, job_id)
        assert final["build_target"] == "android_apk"

    def test_update_config(self, client, template_id):
        job_id = client.post(
            "/builds", json={"template_id": template_id, "config": {"theme": "desert"}}
        ).json()["job_id"]
        wait_for_terminal(client, job_id)

        response = client.put(
            f"/builds/{job_id}/config", json={"config": {"primaryColor": "ff0000", "timeScale": 9}}
        )
        assert response.status_code == 200
        config = response.json()["config"]
        assert config["primaryColor"] == "#FF0000"
        assert config["timeScale"] == 2.0
        assert config["theme"] == "desert"

        runtime = client.get(f"/builds/{job_id}/runtime-config").json()
        assert runtime == config

    def test_download_url(self, client, template_id):
        job_id = client.post("/builds", json={"template_id": template_id}).json()["job_id"]
        wait_for_terminal(client, job_id)

        assert client.get(f"/builds/{job_id}/download-url").status_code == 404
        assert client.get(f"/builds/{job_id}/download-url", params={"target": "ios"}).status_code == 400


# =============================================================================
# Files
# =============================================================================

class TestFileHeaders:
    """Tests for content type resolution of published files."""

    @pytest.mark.parametrize("key,content_type,encoding", [
        ("job/webgl/index.html", "text/html; charset=utf-8", None),
        ("job/webgl/Build/game.wasm", "application/wasm", None),
        ("job/webgl/Build/game.wasm.gz", "application/wasm", "gzip"),
        ("job/webgl/Build/game.framework.js.br", "application/javascript", "br"),
        ("job/webgl/Build/game.data.unityweb", "application/octet-stream", "gzip"),
        ("job.apk", "application/vnd.android.package-archive", None),
        ("job/media/video_1.mp4", "video/mp4", None),
        ("job/webgl/unknown.bin", "application/octet-stream", None),
    ])
    def test_resolve(self, key, content_type, encoding):
        headers = resolve_file_headers(key)
        assert headers["Content-Type"] == content_type
        assert headers.get("Content-Encoding") == encoding


class TestFiles:
    """Tests for GET /files/{key}."""

    def test_serves_stored_file(self, client):
        client.portal.call(artifact_store.put, "api-test/webgl/index.html", b"<html>hi</html>")
        response = client.get("/files/api-test/webgl/index.html")
        assert response.status_code == 200
        assert response.content == b"<html>hi</html>"
        assert response.headers["content-type"].startswith("text/html")

    def test_missing_file(self, client):
        assert client.get("/files/nothing/here.zip").status_code == 404

    def test_invalid_key(self, client):
        assert client.get("/files/a//b").status_code in (400, 404)

    def test_streams_precompressed_file(self, client):
        payload = b"console.log('streamed');" * 200
        client.portal.call(artifact_store.put, "api-test/webgl/Build/game.js.gz", gzip.compress(payload))
        response = client.get("/files/api-test/webgl/Build/game.js.gz")
        assert response.status_code == 200
        assert response.headers["content-encoding"] == "gzip"
        assert response.headers["content-type"].startswith("application/javascript")
        assert response.content == payload

    def test_serves_key_with_reserved_characters(self, client):
        key = "api-test/media/cover_1_my game#1.png"
        client.portal.call(artifact_store.put, key, b"png")
        url = public_url(key, "http://testserver")
        assert url == "http://testserver/files/api-test/media/cover_1_my%20game%231.png"
        response = client.get(url)
        assert response.status_code == 200
        assert response.content == b"png"


# =============================================================================
# Job Details and Media
# =============================================================================

class TestUpdateBuild:
    """Tests for PATCH /builds/{job_id}."""

    def test_updates_name_description_and_target(self, client, template_id):
        job_id = client.post("/builds", json={"template_id": template_id}).json()["job_id"]
        wait_for_terminal(client, job_id)

        response = client.patch(
            f"/builds/{job_id}",
            json={"name": "  Space Run  ", "description": "  fast and loud  ", "build_target": "android"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "Space Run"
        assert body["description"] == "fast and loud"
        assert body["build_target"] == "android_apk"
        assert client.get(f"/builds/{job_id}").json()["name"] == "Space Run"

    def test_empty_description_clears_it(self, client, template_id):
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL,
            config={}, description="old",
        )
        response = client.patch(f"/builds/{job.id}", json={"description": "   "})
        assert response.status_code == 200
        assert response.json()["description"] is None
        assert response.json()["name"] == "queued"
        client.post(f"/builds/{job.id}/cancel")

    def test_blank_name_rejected(self, client, template_id):
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        response = client.patch(f"/builds/{job.id}", json={"name": "   "})
        assert response.status_code == 400
        assert job_store.get(job.id).name == "queued"
        client.post(f"/builds/{job.id}/cancel")

    def test_target_change_while_queued_conflicts(self, client, template_id):
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        assert client.patch(f"/builds/{job.id}", json={"build_target": "android_apk"}).status_code == 409
        assert client.patch(f"/builds/{job.id}", json={"build_target": "webgl"}).status_code == 200
        assert client.patch(f"/builds/{job.id}", json={"name": "renamed"}).status_code == 200
        client.post(f"/builds/{job.id}/cancel")

    def test_unknown_target_and_job(self, client, template_id):
        assert client.patch("/builds/missing", json={"name": "x"}).status_code == 404
        job = job_store.create(
            name="queued", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        assert client.patch(f"/builds/{job.id}", json={"build_target": "ios"}).status_code == 422
        client.post(f"/builds/{job.id}/cancel")


class TestAttachMedia:
    """Tests for POST /builds/{job_id}/media."""

    @pytest.fixture
    def job_id(self, client, template_id):
        job = job_store.create(
            name="media", template_id=template_id, build_target=BuildTarget.WEBGL, config={}
        )
        client.post(f"/builds/{job.id}/cancel")
        return job.id

    def test_attach_all_media(self, client, job_id):
        response = client.post(
            f"/builds/{job_id}/media",
            files=[
                ("cover", ("my cover.png", b"cover-bytes", "image/png")),
                ("screenshots", ("a.png", b"shot-a", "image/png")),
                ("screenshots", ("b#2.png", b"shot-b", "image/png")),
                ("video", ("clip (final).mp4", b"video-bytes", "video/mp4")),
            ],
        )
        assert response.status_code == 200
        body = response.json()
        assert body["cover_ref"].startswith(f"{job_id}/media/upload_cover_")
        assert body["cover_ref"].endswith("_my_cover.png")
        assert len(body["screenshot_refs"]) == 2
        assert body["screenshot_refs"][1].endswith("_b_2.png")
        assert body["preview_video_ref"].endswith("_clip__final_.mp4")

        assert client.get(body["urls"]["cover"]).content == b"cover-bytes"
        assert client.get(body["urls"]["screenshots"][0]).content == b"shot-a"
        video = client.get(body["urls"]["preview_video"])
        assert video.content == b"video-bytes"
        assert video.headers["content-type"] == "video/mp4"

    def test_screenshots_replace_list_and_keep_other_refs(self, client, job_id):
        first = client.post(
            f"/builds/{job_id}/media",
            files=[
                ("cover", ("cover.png", b"c", "image/png")),
                ("screenshots", ("1.png", b"1", "image/png")),
                ("screenshots", ("2.png", b"2", "image/png")),
            ],
        ).json()
        second = client.post(
            f"/builds/{job_id}/media", files=[("screenshots", ("3.png", b"3", "image/png"))]
        ).json()
        assert second["cover_ref"] == first["cover_ref"]
        assert len(second["screenshot_refs"]) == 1
        assert second["screenshot_refs"][0].endswith("_3.png")

    def test_no_media_rejected(self, client, job_id):
        assert client.post(f"/builds/{job_id}/media").status_code == 400
        response = client.post(
            f"/builds/{job_id}/media", files=[("cover", ("empty.png", b"", "image/png"))]
        )
        assert response.status_code == 400

    def test_too_many_screenshots(self, client, job_id):
        files = [("screenshots", (f"{i}.png", b"x", "image/png")) for i in range(9)]
        assert client.post(f"/builds/{job_id}/media", files=files).status_code == 400

    def test_unknown_job(self, client):
        response = client.post(
            "/builds/missing/media", files=[("cover", ("c.png", b"c", "image/png"))]
        )
        assert response.status_code == 404
