"""
tests/test_files.py

Object storage is replaced by an in-memory fake boto3 client.
"""
from __future__ import annotations

import io
import re
import uuid

import pytest
from botocore.exceptions import ClientError

import opsmanual.manual as manual
from opsmanual.manual import create_file, get_db

CSRF = "test-token"


# ───────────────────────── helpers ────────────────────────────────────
class FakeS3:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.deleted: list[str] = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.objects[key] = (fileobj.read(), (ExtraArgs or {}).get("ContentType"))

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://signed.example/{Params['Bucket']}/{Params['Key']}?ttl={ExpiresIn}"

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)


class BrokenS3(FakeS3):
    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        raise ClientError({"Error": {"Code": "500", "Message": "down"}}, "PutObject")


@pytest.fixture
def fake_r2(monkeypatch) -> FakeS3:
    fake = FakeS3()
    for key, value in {
        "R2_ACCOUNT_ID": "acct",
        "R2_ACCESS_KEY_ID": "id",
        "R2_SECRET_ACCESS_KEY": "secret",
        "R2_BUCKET": "manual",
        "R2_PUBLIC_BASE": "https://cdn.example/",
    }.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(manual, "_r2_client", lambda cfg: fake)
    return fake


def _upload(client, name: str, data: dict, *, body=b"\x89PNG....", filename="shot.png",
            mime="image/png"):
    form = dict(data, file=(io.BytesIO(body), filename, mime))
    return client.post(
        f"/api/{name}",
        data=form,
        headers={"X-CSRFToken": CSRF},
        content_type="multipart/form-data",
    )


def _post(client, name: str, payload: dict):
    return client.post(f"/api/{name}", json=payload, headers={"X-CSRFToken": CSRF})


def _new_item(client) -> int:
    cat = _post(client, "manual.createCategory", {"title": f"img-{uuid.uuid4().hex[:6]}"})
    it = _post(
        client,
        "manual.createItem",
        {"categoryId": cat.get_json()["id"], "title": "with pictures", "content": "x"},
    )
    return it.get_json()["id"]


# ───────────────────────── config ─────────────────────────────────────
def test_r2_config_reads_env_file(monkeypatch, tmp_path):
    env = tmp_path / ".env"
    env.write_text("# comment\nR2_BUCKET = from-file\nR2_ACCOUNT_ID=acct\n")
    monkeypatch.setattr(manual, "ENV_FILE", env)
    cfg = manual.r2_config()
    assert cfg == {"R2_BUCKET": "from-file", "R2_ACCOUNT_ID": "acct"}
    assert manual.r2_is_configured(cfg) is False


def test_object_url_prefers_public_base():
    cfg = {"R2_PUBLIC_BASE": "https://cdn.example/", "R2_BUCKET": "b", "R2_ACCOUNT_ID": "a"}
    assert manual.r2_object_url(cfg, "/items/1/x.png") == "https://cdn.example/items/1/x.png"
    del cfg["R2_PUBLIC_BASE"]
    assert manual.r2_object_url(cfg, "k") == "https://b.a.r2.cloudflarestorage.com/k"


def test_merge_env_writes_file(monkeypatch, tmp_path):
    monkeypatch.setattr(manual, "ENV_FILE", tmp_path / ".env")
    monkeypatch.setenv("R2_BUCKET", "before")  # restored (unset) after the test
    manual.merge_env({"R2_BUCKET": "bkt", "R2_ENDPOINT": ""})
    assert (tmp_path / ".env").read_text() == "R2_BUCKET=bkt\n"
    assert manual.r2_config()["R2_BUCKET"] == "bkt"


# ───────────────────────── item images ────────────────────────────────
def test_upload_item_image(admin_client, fake_r2):
    item_id = _new_item(admin_client)
    rv = _upload(admin_client, "manual.uploadItemImage", {"itemId": str(item_id)})
    assert rv.status_code == 200, rv.get_json()
    img = rv.get_json()

    assert re.fullmatch(rf"items/{item_id}/[0-9a-f]{{32}}\.png", img["imageKey"])
    assert img["imageUrl"] == f"https://cdn.example/{img['imageKey']}"
    assert img["imageName"] == "shot.png"
    assert img["mimeType"] == "image/png"
    assert img["size"] == len(b"\x89PNG....")
    assert fake_r2.objects[img["imageKey"]] == (b"\x89PNG....", "image/png")


def test_upload_item_image_rejects_non_images(admin_client, fake_r2):
    item_id = _new_item(admin_client)
    rv = _upload(
        admin_client,
        "manual.uploadItemImage",
        {"itemId": str(item_id)},
        body=b"hello",
        filename="notes.txt",
        mime="text/plain",
    )
    assert rv.status_code == 415
    assert rv.get_json()["error"]["code"] == "UNSUPPORTED_MEDIA_TYPE"
    assert fake_r2.objects == {}


def test_upload_too_large(admin_client, fake_r2, monkeypatch):
    monkeypatch.setattr(manual, "UPLOAD_MAX_BYTES", 4)
    item_id = _new_item(admin_client)
    rv = _upload(admin_client, "manual.uploadItemImage", {"itemId": str(item_id)})
    assert rv.status_code == 413
    assert rv.get_json()["error"]["code"] == "PAYLOAD_TOO_LARGE"


def test_upload_without_storage(admin_client):
    item_id = _new_item(admin_client)
    rv = _upload(admin_client, "manual.uploadItemImage", {"itemId": str(item_id)})
    assert rv.status_code == 503
    assert rv.get_json()["error"]["code"] == "STORAGE_UNAVAILABLE"


def test_upload_storage_failure(admin_client, fake_r2, monkeypatch):
    monkeypatch.setattr(manual, "_r2_client", lambda cfg: BrokenS3())
    item_id = _new_item(admin_client)
    rv = _upload(admin_client, "manual.uploadItemImage", {"itemId": str(item_id)})
    assert rv.status_code == 502
    assert rv.get_json()["error"]["code"] == "STORAGE_ERROR"
    assert manual.list_item_images(item_id, db=get_db()) == []


def test_deleting_item_purges_objects(admin_client, fake_r2):
    item_id = _new_item(admin_client)
    key = _upload(admin_client, "manual.uploadItemImage", {"itemId": str(item_id)}).get_json()[
        "imageKey"
    ]
    _post(admin_client, "manual.deleteItem", {"id": item_id})
    assert fake_r2.deleted == [key]


# ───────────────────────── files router ───────────────────────────────
def test_files_need_sign_in(client):
    assert client.get("/api/files.list").status_code == 401


def test_metadata_upload_builds_key(reader_client, fake_r2, users):
    rv = _post(reader_client, "files.upload", {"name": "Run book v2.pdf", "size": 10})
    assert rv.status_code == 200, rv.get_json()
    row = rv.get_json()
    assert re.fullmatch(rf"uploads/{users['reader']}/\d+-Run_book_v2\.pdf", row["key"])
    assert row["uploadedBy"] == users["reader"]
    assert row["url"] == f"https://cdn.example/{row['key']}"

    listed = reader_client.get("/api/files.list").get_json()
    assert row["id"] in [f["id"] for f in listed]


def test_binary_upload_and_download_url(reader_client, fake_r2):
    rv = _upload(
        reader_client,
        "files.uploadBinary",
        {"description": "wiring"},
        body=b"%PDF-1.7",
        filename="wiring.pdf",
        mime="application/pdf",
    )
    assert rv.status_code == 200, rv.get_json()
    row = rv.get_json()
    assert row["description"] == "wiring"
    assert fake_r2.objects[row["key"]] == (b"%PDF-1.7", "application/pdf")

    rv = reader_client.get("/api/files.getDownloadUrl", query_string={"fileKey": row["key"]})
    assert rv.get_json()["url"] == f"https://signed.example/manual/{row['key']}?ttl=3600"


def test_download_url_for_unknown_key(reader_client, fake_r2):
    rv = reader_client.get("/api/files.getDownloadUrl", query_string={"fileKey": "nope"})
    assert rv.status_code == 404


def test_only_uploader_or_admin_may_delete(reader_client, fake_r2, users):
    admins = create_file(
        key=f"uploads/{users['admin']}/1-x.txt",
        url="https://cdn.example/x.txt",
        name="x.txt",
        uploaded_by=users["admin"],
        db=get_db(),
    )
    rv = _post(reader_client, "files.delete", {"fileId": admins["id"]})
    assert rv.status_code == 403

    mine = _post(reader_client, "files.upload", {"name": "mine.txt"}).get_json()
    rv = _post(reader_client, "files.delete", {"fileId": mine["id"]})
    assert rv.get_json() == {"id": mine["id"], "deleted": True}
    assert fake_r2.deleted == [mine["key"]]


def test_admin_deletes_any_file(admin_client, fake_r2, users):
    row = create_file(
        key=f"uploads/{users['reader']}/2-y.txt",
        url="https://cdn.example/y.txt",
        name="y.txt",
        uploaded_by=users["reader"],
        db=get_db(),
    )
    assert _post(admin_client, "files.delete", {"fileId": row["id"]}).status_code == 200
