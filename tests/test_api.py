def _upload(client, make_jpeg, name="IMG_0001.jpg"):
    r = client.post("/api/ingest/images", files={"file": (name, make_jpeg(), "image/jpeg")})
    assert r.status_code == 201, r.text
    return r.json()


def test_upload_list_and_serve_files(client, make_jpeg):
    img = _upload(client, make_jpeg)
    assert img["preview_status"] == "ready"
    assert img["metadata"]["camera_make"] == "Canon"
    assert img["thumbnail_url"].startswith("http://testserver/ingest-files/thumbnails/")

    listed = client.get("/api/ingest/images").json()
    assert [i["id"] for i in listed] == [img["id"]]

    preview = client.get(img["preview_url"].replace("http://testserver", ""))
    assert preview.status_code == 200
    assert preview.content[:2] == b"\xff\xd8"


def test_public_files_refuse_traversal_and_missing(client):
    assert client.get("/ingest-files/previews/none.jpg").status_code == 404
    assert client.get("/ingest-files/..%2F..%2Fetc%2Fpasswd").status_code in (403, 404)


def test_missing_actor_is_401(client):
    r = client.get("/api/ingest/images", headers={"X-User-Id": ""})
    assert r.status_code == 401
    assert client.get("/api/ingest/settings", headers={"X-User-Id": "abc"}).status_code == 401


def test_unsupported_upload_is_422(client):
    r = client.post("/api/ingest/images", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_upload"


def test_edit_validation_and_errors(client, make_jpeg):
    img = _upload(client, make_jpeg)
    r = client.patch(f"/api/ingest/images/{img['id']}", json={"rating": 4, "starred": True})
    assert (r.json()["rating"], r.json()["starred"]) == (4, True)

    r = client.patch(f"/api/ingest/images/{img['id']}", json={"rating": 9})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_edit"

    r = client.patch("/api/ingest/images/nope", json={"rating": 1})
    assert r.status_code == 404
    assert r.json() == {"error": "image_not_found", "detail": "staged image nope not found"}

    # another user cannot see it
    r = client.patch(f"/api/ingest/images/{img['id']}", json={"rating": 1}, headers={"X-User-Id": "8"})
    assert r.status_code == 404


def test_batch_reorder_and_delete(client, make_jpeg):
    a = _upload(client, make_jpeg, "a.jpg")
    b = _upload(client, make_jpeg, "b.jpg")
    r = client.post("/api/ingest/images/batch",
                    json={"ids": [a["id"], b["id"]], "changes": {"culled": True}, "tags": [{"name": "rejects"}]})
    assert [(i["culled"], [t["name"] for t in i["tags"]]) for i in r.json()] == [(True, ["rejects"])] * 2

    r = client.post("/api/ingest/images/reorder", json={"ids": [b["id"], a["id"]]})
    assert [i["id"] for i in r.json()] == [b["id"], a["id"]]

    assert client.delete(f"/api/ingest/images/{a['id']}").json() == {"deleted": a["id"]}
    assert [i["id"] for i in client.get("/api/ingest/images").json()] == [b["id"]]


def test_preview_status_retry_and_enhance(client, make_jpeg):
    img = _upload(client, make_jpeg)
    r = client.post("/api/ingest/preview-status", json={"ids": [img["id"]]})
    [row] = r.json()
    assert row["preview_status"] == "ready"
    assert row["preview_url"].endswith(f"/previews/{img['id']}.jpg")

    r = client.post(f"/api/ingest/images/{img['id']}/preview/retry")
    assert r.status_code == 409
    assert r.json()["error"] == "preview_state"

    r = client.post("/api/ingest/enhance", json={"ids": [img["id"]]})
    assert r.json()[0]["status"] == "queued"
    assert r.json()[0]["target_width"] == 1500


def test_tags(client, make_jpeg):
    img = _upload(client, make_jpeg)
    r = client.post("/api/ingest/tags", json={"name": "Smith Wedding", "tag_type": "project"})
    assert r.status_code == 201 and r.json()["slug"] == "smith-wedding"

    r = client.post("/api/ingest/tags", json={"name": "smith wedding"})
    assert r.status_code == 409

    r = client.put(f"/api/ingest/images/{img['id']}/tags",
                   json={"tags": [{"name": "Smith Wedding", "tag_type": "project"}, {"name": "outdoor"}]})
    tags = r.json()
    assert {t["name"] for t in tags} == {"Smith Wedding", "outdoor"}

    outdoor = next(t for t in tags if t["name"] == "outdoor")
    assert client.delete(f"/api/ingest/images/{img['id']}/tags/{outdoor['id']}").json() == {"removed": outdoor["id"]}
    assert client.delete(f"/api/ingest/images/{img['id']}/tags/{outdoor['id']}").status_code == 404

    found = client.get("/api/ingest/tags", params={"q": "smith", "tag_type": "project"}).json()
    assert [t["name"] for t in found] == ["Smith Wedding"]


def test_promote_uses_project_tag(client, make_jpeg):
    img = _upload(client, make_jpeg)
    client.post(f"/api/ingest/images/{img['id']}/tags", json={"tags": [{"name": "Smith", "tag_type": "project"}]})
    client.put("/api/ingest/settings", json={"values": {"schema.path": "clients/{project}/{date:Y}"}})

    r = client.post("/api/ingest/promote", json={"ids": [img["id"], "ghost"]})
    body = r.json()
    assert r.status_code == 200
    assert [o["file_path"] for o in body["promoted"]] == ["clients/Smith/2025/001-IMG_0001.jpg"]
    assert body["skipped"] == ["ghost"]
    assert client.get("/api/ingest/images").json() == []


def test_promote_rejects_unknown_association(client, make_jpeg):
    img = _upload(client, make_jpeg)
    r = client.post("/api/ingest/promote", json={"ids": [img["id"]], "association": {"type": "gallery", "id": "1"}})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_association"


def test_settings_roundtrip(client):
    r = client.put("/api/ingest/settings", json={"values": {"schema.sequence_padding": 4}})
    assert r.json()["overrides"] == {"schema.sequence_padding": 4}
    assert r.json()["effective"]["schema"]["sequence_padding"] == 4

    assert client.put("/api/ingest/settings", json={"values": {"schema.bogus": 1}}).status_code == 422

    assert client.delete("/api/ingest/settings/schema.sequence_padding").json() == {
        "deleted": "schema.sequence_padding"}
    assert client.delete("/api/ingest/settings/schema.sequence_padding").status_code == 404
    assert client.post("/api/ingest/settings/reset").json() == {"removed": 0}


def test_doctor(client):
    r = client.get("/api/ingest/doctor")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["version"] == "12.76"


def test_settings_reject_bad_values_and_startup_keys(client, make_jpeg):
    r = client.put("/api/ingest/settings", json={"values": {"schema.sequence_padding": "four"}})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_edit"
    assert client.put("/api/ingest/settings", json={"values": {"paths.db_path": "/tmp/other.db"}}).status_code == 422
    assert client.put("/api/ingest/settings", json={"values": {"storage.temp.root": "/tmp/x"}}).status_code == 422
    assert client.get("/api/ingest/settings").json()["overrides"] == {}

    r = client.put("/api/ingest/settings", json={"values": {"schema.sequence_padding": "4"}})
    assert r.json()["overrides"] == {"schema.sequence_padding": 4}

    img = _upload(client, make_jpeg)
    body = client.post("/api/ingest/promote", json={"ids": [img["id"]]}).json()
    assert [o["file_path"] for o in body["promoted"]] == ["shoots/2025/03/Canon/0001-IMG_0001.jpg"]


def test_retry_accepts_pending_preview(client, make_jpeg):
    client.put("/api/ingest/settings", json={"values": {"exif.preview.enabled": False}})
    img = _upload(client, make_jpeg)
    assert img["preview_status"] == "pending"
    client.delete("/api/ingest/settings/exif.preview.enabled")

    r = client.post(f"/api/ingest/images/{img['id']}/preview/retry")
    assert r.status_code == 200
    assert r.json()["preview_status"] == "ready"
