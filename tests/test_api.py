"""
Tests for the HTTP layer.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from picsearch.api import create_app, decode_base64_image, encode_data_uri

from tests.mocks import create_mock_image, create_oversized_png


@pytest.fixture
def client(test_settings, mock_clip_model):
    app = create_app(test_settings, embedding_model=mock_clip_model)
    with TestClient(app) as test_client:
        yield test_client


def upload_batch(client, images, current, total, total_files):
    files = [("files[]", (name, data, "image/png")) for name, data in images.items()]
    return client.post(
        "/upload/directory",
        files=files or None,
        data={
            "currentBatch": str(current),
            "totalBatches": str(total),
            "totalFiles": str(total_files),
            "isLastBatch": "true" if current == total else "false",
        },
    )


def upload_all(client, images):
    names = sorted(images)
    first = {name: images[name] for name in names[:2]}
    rest = {name: images[name] for name in names[2:]}
    assert upload_batch(client, first, 1, 2, len(images)).status_code == 200
    return upload_batch(client, rest, 2, 2, len(images))


class TestHelpers:
    def test_decode_data_uri(self):
        data = create_mock_image("red")
        encoded = "data:image/png;base64," + base64.b64encode(data).decode()
        assert decode_base64_image(encoded) == data
        assert decode_base64_image(base64.b64encode(data).decode()) == data

    @pytest.mark.parametrize("bad", ["", "!!!not-base64!!!"])
    def test_decode_rejects_garbage(self, bad):
        with pytest.raises(ValueError):
            decode_base64_image(bad)

    def test_encode_data_uri(self):
        assert encode_data_uri("x.jpg", b"abc").startswith("data:image/jpeg;base64,")
        assert encode_data_uri("x.unknown", b"abc").startswith("data:image/png;base64,")


class TestDirectoryUpload:
    def test_batches_then_index(self, client, sample_images):
        names = sorted(sample_images)
        first = {name: sample_images[name] for name in names[:2]}

        response = upload_batch(client, first, 1, 2, 5)
        assert response.status_code == 200
        body = response.json()
        assert body["indexingComplete"] is False
        assert body["message"] == "2 files uploaded successfully. Awaiting more..."

        response = upload_all(client, sample_images)
        assert response.status_code == 200
        body = response.json()
        assert body["indexingComplete"] is True
        assert body["status"]["state"] == "ready"

    def test_invalid_batch_numbers(self, client, sample_images):
        response = upload_batch(client, sample_images, 3, 2, 5)
        assert response.status_code == 400

    def test_non_images_are_skipped(self, client):
        response = client.post(
            "/upload/directory",
            files=[
                ("files[]", ("a.png", create_mock_image("red"), "image/png")),
                ("files[]", ("notes.txt", b"hello", "text/plain")),
            ],
            data={
                "currentBatch": "1",
                "totalBatches": "2",
                "totalFiles": "1",
                "isLastBatch": "false",
            },
        )
        assert response.status_code == 200
        assert response.json()["message"].startswith("1 files uploaded")
        assert response.json()["skipped"] == ["notes.txt"]

    def test_skipped_files_reported_on_last_batch(self, client, sample_images):
        response = client.post(
            "/upload/directory",
            files=[
                ("files[]", ("a.png", sample_images["a.png"], "image/png")),
                ("files[]", ("b.png", sample_images["b.png"], "image/png")),
                ("files[]", ("notes.txt", b"hello", "text/plain")),
            ],
            data={
                "currentBatch": "1",
                "totalBatches": "1",
                "totalFiles": "2",
                "isLastBatch": "true",
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["indexingComplete"] is True
        assert body["skipped"] == ["notes.txt"]
        assert body["message"] == (
            "Indexing complete. 2 files indexed successfully. 1 files skipped."
        )
        assert body["status"]["indexed_count"] == 2

    def test_indexing_failure(self, client, sample_images, mock_clip_model):
        mock_clip_model.simulate_load_failure()
        response = upload_batch(client, {"a.png": sample_images["a.png"]}, 1, 1, 1)

        assert response.status_code == 500
        assert response.json()["detail"]["message"] == "Error during indexing"

    def test_declared_count_mismatch(self, client, sample_images):
        response = upload_batch(client, {"a.png": sample_images["a.png"]}, 1, 1, 4)
        assert response.status_code == 500
        assert "declared" in response.json()["detail"]["error"]


class TestQueries:
    def test_text_query(self, client, sample_images):
        upload_all(client, sample_images)

        response = client.post("/upload/text", json={"query": "a red square"})
        assert response.status_code == 200
        results = response.json()
        assert len(results) == 5
        assert all(r["imageData"].startswith("data:image/") for r in results)
        scores = [r["score"] for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_image_query_returns_same_image_first(self, client, sample_images):
        upload_all(client, sample_images)
        data = sample_images["b.png"]
        payload = "data:image/png;base64," + base64.b64encode(data).decode()

        response = client.post("/upload/image", json={"image": payload})
        assert response.status_code == 200
        first = response.json()[0]
        assert first["fileName"].endswith("-b.png")
        assert base64.b64decode(first["imageData"].split(",", 1)[1]) == data

    def test_queries_on_empty_index(self, client):
        response = client.post("/upload/text", json={"query": "anything"})
        assert response.status_code == 200
        assert response.json() == []

        payload = base64.b64encode(create_mock_image("red")).decode()
        response = client.post("/upload/image", json={"image": payload})
        assert response.status_code == 200
        assert response.json() == []

    def test_empty_text_rejected(self, client):
        response = client.post("/upload/text", json={"query": "  "})
        assert response.status_code == 422

    def test_bad_image_payloads(self, client):
        response = client.post("/upload/image", json={"image": "%%%"})
        assert response.status_code == 400

        payload = base64.b64encode(b"not an image").decode()
        response = client.post("/upload/image", json={"image": payload})
        assert response.status_code == 400

    def test_oversized_query_image(self, client, sample_images):
        upload_all(client, sample_images)
        payload = base64.b64encode(create_oversized_png()).decode()

        response = client.post("/upload/image", json={"image": payload})
        assert response.status_code == 400
        assert "too large" in response.json()["detail"]

    def test_model_unavailable(self, client, mock_clip_model):
        mock_clip_model.simulate_load_failure()
        response = client.post("/upload/text", json={"query": "query"})
        assert response.status_code == 503


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["index"]["total_embeddings"] == 0

    def test_storage_wiped_on_shutdown(
        self, test_settings, mock_clip_model, sample_images
    ):
        app = create_app(test_settings, embedding_model=mock_clip_model)
        with TestClient(app) as test_client:
            upload_all(test_client, sample_images)
            assert app.state.service.index.count() == 5

        assert app.state.service.index.count() == 0
        assert list(test_settings.upload_storage_path.iterdir()) == []

    def test_openapi(self, client):
        paths = client.get("/openapi.json").json()["paths"]
        for path in ("/upload/text", "/upload/image", "/upload/directory", "/health"):
            assert path in paths
