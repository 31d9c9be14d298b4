"""Tests for image upload, face detection and record management endpoints."""

from pathlib import Path

import pytest
from httpx import AsyncClient

from tracelens_service.api.auth import create_access_token
from tracelens_service.storage.exceptions import StorageWriteError

UPLOAD_URL = "/api/v1/images/upload"
DETECT_URL = "/api/v1/images/detect-faces"
IMAGES_URL = "/api/v1/images"


def _files(*entries: tuple[str, bytes, str]) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("images", entry) for entry in entries]


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, test_client: AsyncClient) -> None:
        response = await test_client.get(IMAGES_URL)

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_garbage_token(self, test_client: AsyncClient) -> None:
        response = await test_client.get(
            IMAGES_URL, headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_signed_with_other_key(self, test_client, owner, test_settings) -> None:
        forged = test_settings.model_copy(update={"jwt_secret_key": "someone-elses-key"})
        token = create_access_token(owner.id, forged)

        response = await test_client.get(
            IMAGES_URL, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_for_unknown_user(self, test_client, test_settings) -> None:
        token = create_access_token(424242, test_settings)

        response = await test_client.get(
            IMAGES_URL, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "User not found"


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_registers_images(
        self, test_client, owner, auth_headers, image_bytes_factory, test_settings
    ) -> None:
        jpeg = image_bytes_factory(width=320, height=240)
        png = image_bytes_factory(width=100, height=50, fmt="PNG")

        response = await test_client.post(
            UPLOAD_URL,
            files=_files(("beach.jpg", jpeg, "image/jpeg"), ("logo.png", png, "image/png")),
            headers=auth_headers(owner),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Uploaded 2 of 2 images"
        assert data["errors"] == []
        first, second = data["images"]
        assert first["originalName"] == "beach.jpg"
        assert (first["width"], first["height"]) == (320, 240)
        assert first["processed"] is False
        assert first["detectionResult"] is None
        assert second["mimeType"] == "image/png"
        assert "path" not in first
        stored = [p.name for p in Path(test_settings.upload_dir).iterdir()]
        assert sorted(stored) == sorted([first["filename"], second["filename"]])

    @pytest.mark.asyncio
    async def test_partial_upload_reports_errors(
        self, test_client, owner, auth_headers, image_bytes_factory
    ) -> None:
        response = await test_client.post(
            UPLOAD_URL,
            files=_files(
                ("ok.jpg", image_bytes_factory(), "image/jpeg"),
                ("notes.txt", b"hello", "text/plain"),
            ),
            headers=auth_headers(owner),
        )

        assert response.status_code == 201
        data = response.json()
        assert len(data["images"]) == 1
        assert data["errors"] == [
            {
                "filename": "notes.txt",
                "code": "INVALID_MIME_TYPE",
                "message": data["errors"][0]["message"],
            }
        ]
        assert data["message"] == "Uploaded 1 of 2 images"

    @pytest.mark.asyncio
    async def test_too_many_files_rejected_wholesale(
        self, test_client, owner, auth_headers, image_bytes_factory, test_settings
    ) -> None:
        content = image_bytes_factory()
        files = _files(*[(f"p{i}.jpg", content, "image/jpeg") for i in range(11)])

        response = await test_client.post(UPLOAD_URL, files=files, headers=auth_headers(owner))

        assert response.status_code == 400
        assert "10" in response.json()["detail"]
        assert list(Path(test_settings.upload_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_no_files(self, test_client, owner, auth_headers) -> None:
        response = await test_client.post(
            UPLOAD_URL, data={"note": "nothing"}, headers=auth_headers(owner)
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "No files were uploaded"

    @pytest.mark.asyncio
    async def test_all_files_rejected(self, test_client, owner, auth_headers) -> None:
        response = await test_client.post(
            UPLOAD_URL,
            files=_files(("empty.jpg", b"", "image/jpeg"), ("fake.png", b"nope", "image/png")),
            headers=auth_headers(owner),
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["message"] == "No valid images were uploaded"
        assert [e["code"] for e in detail["errors"]] == ["EMPTY_FILE", "INVALID_IMAGE"]

    @pytest.mark.asyncio
    async def test_database_failure_on_one_file_keeps_the_others(
        self, test_client, owner, auth_headers, image_bytes_factory, test_settings, failing_writes
    ) -> None:
        headers = auth_headers(owner)
        await failing_writes("INSERT", "b.jpg")
        content = image_bytes_factory()

        response = await test_client.post(
            UPLOAD_URL,
            files=_files(("a.jpg", content, "image/jpeg"), ("b.jpg", content, "image/jpeg")),
            headers=headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert [image["originalName"] for image in data["images"]] == ["a.jpg"]
        assert [(e["filename"], e["code"]) for e in data["errors"]] == [
            ("b.jpg", "PERSIST_FAILED")
        ]
        assert data["message"] == "Uploaded 1 of 2 images"
        stored = [p.name for p in Path(test_settings.upload_dir).iterdir()]
        assert stored == [data["images"][0]["filename"]]

    @pytest.mark.asyncio
    async def test_server_side_failures_are_not_bad_requests(
        self, test_client, owner, auth_headers, image_bytes_factory, storage, monkeypatch
    ) -> None:
        async def failing_save(content, original_name):
            raise StorageWriteError(original_name, detail="disk full")

        monkeypatch.setattr(storage, "save", failing_save)

        response = await test_client.post(
            UPLOAD_URL,
            files=_files(
                ("a.jpg", image_bytes_factory(), "image/jpeg"),
                ("empty.jpg", b"", "image/jpeg"),
            ),
            headers=auth_headers(owner),
        )

        assert response.status_code == 500
        detail = response.json()["detail"]
        assert [e["code"] for e in detail["errors"]] == ["STORAGE_FAILED", "EMPTY_FILE"]


class TestDetectFaces:
    @pytest.mark.asyncio
    async def test_detects_faces_for_owned_images(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        first = await stored_image_factory(owner.id, "a.jpg", width=800, height=600)
        second = await stored_image_factory(owner.id, "b.jpg", width=640, height=480)
        ids = [second.id, first.id]

        response = await test_client.post(
            DETECT_URL, json={"imageIds": ids}, headers=auth_headers(owner)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 2
        assert data["failed"] == 0
        assert data["message"] == "Processed 2 of 2 images"
        assert [r["imageId"] for r in data["results"]] == ids
        for outcome in data["results"]:
            assert outcome["status"] == "success"
            assert outcome["error"] is None
            result = outcome["result"]
            assert result["provider"] == "mock"
            assert result["faceCount"] == len(result["faces"])
            confidences = [f["confidence"] for f in result["faces"]]
            assert confidences == sorted(confidences, reverse=True)

        detail = await test_client.get(f"{IMAGES_URL}/{first.id}", headers=auth_headers(owner))
        body = detail.json()
        assert body["processed"] is True
        assert body["processedAt"] is not None
        assert body["detectionResult"]["imageWidth"] == 800

    @pytest.mark.asyncio
    async def test_mixed_outcomes(
        self, test_client, owner, other_owner, auth_headers, stored_image_factory
    ) -> None:
        mine = await stored_image_factory(owner.id, "mine.jpg", width=800, height=600)
        theirs = await stored_image_factory(other_owner.id, "theirs.jpg")

        response = await test_client.post(
            DETECT_URL,
            json={"imageIds": [mine.id, theirs.id]},
            headers=auth_headers(owner),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["failed"] == 1
        assert data["results"][1] == {
            "imageId": theirs.id,
            "status": "failed",
            "result": None,
            "error": {"code": "NOT_FOUND", "message": data["results"][1]["error"]["message"]},
        }

    @pytest.mark.asyncio
    async def test_only_unknown_ids_is_bad_request(
        self, test_client, owner, auth_headers
    ) -> None:
        response = await test_client.post(
            DETECT_URL, json={"imageIds": [9001, 9002]}, headers=auth_headers(owner)
        )

        assert response.status_code == 400
        data = response.json()
        assert data["processed"] == 0
        assert data["failed"] == 2
        assert {r["error"]["code"] for r in data["results"]} == {"NOT_FOUND"}

    @pytest.mark.asyncio
    async def test_missing_file_is_reported(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        record = await stored_image_factory(owner.id, "gone.jpg")
        Path(record.path).unlink()

        response = await test_client.post(
            DETECT_URL, json={"imageIds": [record.id]}, headers=auth_headers(owner)
        )

        assert response.status_code == 400
        assert response.json()["results"][0]["error"]["code"] == "FILE_MISSING"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 11])
    async def test_batch_size_out_of_range(
        self, test_client, owner, auth_headers, count
    ) -> None:
        response = await test_client.post(
            DETECT_URL,
            json={"imageIds": list(range(1, count + 1))},
            headers=auth_headers(owner),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_BATCH_INPUT"


class TestListAndStats:
    @pytest.mark.asyncio
    async def test_list_paginates_owner_images(
        self, test_client, owner, other_owner, auth_headers, stored_image_factory
    ) -> None:
        for i in range(3):
            await stored_image_factory(owner.id, f"img{i}.jpg")
        await stored_image_factory(other_owner.id, "foreign.jpg")

        response = await test_client.get(
            IMAGES_URL, params={"page": 1, "limit": 2}, headers=auth_headers(owner)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(data["images"]) == 2
        assert all("path" not in image for image in data["images"])

    @pytest.mark.asyncio
    async def test_list_sorts_and_filters(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        for name in ("b.jpg", "a.jpg", "c.jpg"):
            await stored_image_factory(owner.id, name)

        response = await test_client.get(
            IMAGES_URL,
            params={"sortBy": "original_name", "sortOrder": "asc", "processed": "false"},
            headers=auth_headers(owner),
        )

        assert response.status_code == 200
        names = [image["originalName"] for image in response.json()["images"]]
        assert names == ["a.jpg", "b.jpg", "c.jpg"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{"page": 0}, {"limit": 101}, {"sortBy": "path"}, {"sortOrder": "sideways"}],
    )
    async def test_list_rejects_invalid_query(
        self, test_client, owner, auth_headers, params
    ) -> None:
        response = await test_client.get(IMAGES_URL, params=params, headers=auth_headers(owner))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        first = await stored_image_factory(owner.id, "a.jpg", width=800, height=600)
        await stored_image_factory(owner.id, "b.jpg")
        await test_client.post(
            DETECT_URL, json={"imageIds": [first.id]}, headers=auth_headers(owner)
        )

        response = await test_client.get(f"{IMAGES_URL}/stats", headers=auth_headers(owner))

        assert response.status_code == 200
        data = response.json()
        assert data["totalImages"] == 2
        assert data["processedImages"] == 1
        assert data["totalSize"] > 0
        assert data["totalFaces"] >= 0
        assert 0.0 <= data["avgConfidence"] <= 1.0

    @pytest.mark.asyncio
    async def test_get_foreign_image_is_not_found(
        self, test_client, owner, other_owner, auth_headers, stored_image_factory
    ) -> None:
        record = await stored_image_factory(other_owner.id, "theirs.jpg")

        response = await test_client.get(f"{IMAGES_URL}/{record.id}", headers=auth_headers(owner))

        assert response.status_code == 404


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_record_and_file(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        record = await stored_image_factory(owner.id, "a.jpg")
        record_id, path = record.id, Path(record.path)

        response = await test_client.delete(
            f"{IMAGES_URL}/{record_id}", headers=auth_headers(owner)
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "fileDeleted": True}
        assert not path.exists()
        follow_up = await test_client.get(
            f"{IMAGES_URL}/{record_id}", headers=auth_headers(owner)
        )
        assert follow_up.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_with_file_already_gone(
        self, test_client, owner, auth_headers, stored_image_factory
    ) -> None:
        """The record is still removed when its file vanished beforehand."""
        record = await stored_image_factory(owner.id, "a.jpg")
        record_id = record.id
        Path(record.path).unlink()

        response = await test_client.delete(
            f"{IMAGES_URL}/{record_id}", headers=auth_headers(owner)
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "fileDeleted": False}
        follow_up = await test_client.get(
            f"{IMAGES_URL}/{record_id}", headers=auth_headers(owner)
        )
        assert follow_up.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_foreign_image(
        self, test_client, owner, other_owner, auth_headers, stored_image_factory
    ) -> None:
        record = await stored_image_factory(other_owner.id, "theirs.jpg")
        path = Path(record.path)

        response = await test_client.delete(
            f"{IMAGES_URL}/{record.id}", headers=auth_headers(owner)
        )

        assert response.status_code == 404
        assert path.exists()

    @pytest.mark.asyncio
    async def test_bulk_delete(
        self, test_client, owner, other_owner, auth_headers, stored_image_factory
    ) -> None:
        first = await stored_image_factory(owner.id, "a.jpg")
        second = await stored_image_factory(owner.id, "b.jpg")
        theirs = await stored_image_factory(other_owner.id, "c.jpg")
        Path(second.path).unlink()
        theirs_path = Path(theirs.path)

        response = await test_client.post(
            f"{IMAGES_URL}/bulk-delete",
            json={"imageIds": [first.id, second.id, theirs.id, 9999]},
            headers=auth_headers(owner),
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 2, "filesDeleted": 1}
        assert theirs_path.exists()

    @pytest.mark.asyncio
    async def test_bulk_delete_requires_ids(self, test_client, owner, auth_headers) -> None:
        response = await test_client.post(
            f"{IMAGES_URL}/bulk-delete", json={"imageIds": []}, headers=auth_headers(owner)
        )

        assert response.status_code == 422
