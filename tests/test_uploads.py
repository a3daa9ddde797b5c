import io
import os

from support import API

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _upload(client, account, field, files):
    return client.post(
        f"{API}/upload/{field}",
        data=files,
        headers=account["headers"],
        content_type="multipart/form-data",
    )


def test_vendor_uploads_image_and_it_is_served(client, app, vendor):
    response = _upload(client, vendor, "image", {"file": (io.BytesIO(PNG_BYTES), "Market Stall.PNG")})

    assert response.status_code == 201
    body = response.get_json()
    assert body["filename"].endswith(".png")
    assert body["filename"] != "Market Stall.PNG"
    assert body["url"] == f"http://localhost/uploads/{body['filename']}"
    assert os.path.exists(os.path.join(app.config["UPLOAD_FOLDER"], body["filename"]))

    served = client.get(f"/uploads/{body['filename']}")
    assert served.status_code == 200
    assert served.data == PNG_BYTES
    served.close()


def test_public_api_url_is_used_for_links(client, app, vendor):
    app.config["PUBLIC_API_URL"] = "https://api.kmercart.example/"

    response = _upload(client, vendor, "image", {"file": (io.BytesIO(PNG_BYTES), "stall.jpg")})

    body = response.get_json()
    assert body["url"] == f"https://api.kmercart.example/uploads/{body['filename']}"


def test_upload_rejects_unsupported_files(client, vendor):
    wrong_type = _upload(client, vendor, "image", {"file": (io.BytesIO(b"MZ"), "tool.exe")})
    missing = _upload(client, vendor, "image", {})

    assert wrong_type.status_code == 400
    assert missing.status_code == 400


def test_customers_cannot_upload(client, customer):
    response = _upload(client, customer, "image", {"file": (io.BytesIO(PNG_BYTES), "a.png")})

    assert response.status_code == 403


def test_multiple_upload_is_all_or_nothing(client, app, vendor):
    accepted = _upload(
        client,
        vendor,
        "images",
        {"files": [(io.BytesIO(PNG_BYTES), "a.png"), (io.BytesIO(PNG_BYTES), "b.webp")]},
    )
    assert accepted.status_code == 201
    assert len(accepted.get_json()["files"]) == 2

    before = set(os.listdir(app.config["UPLOAD_FOLDER"]))
    rejected = _upload(
        client,
        vendor,
        "images",
        {"files": [(io.BytesIO(PNG_BYTES), "c.png"), (io.BytesIO(b"nope"), "d.txt")]},
    )
    assert rejected.status_code == 400
    assert set(os.listdir(app.config["UPLOAD_FOLDER"])) == before
