"""
Tests for structured error responses, upload validation and version endpoints.
"""

import io
from unittest.mock import patch

import storage
from config import Config


def assert_envelope(json_data, code):
    """Check the structured error envelope shape."""
    assert "error" in json_data
    assert isinstance(json_data["error"], dict)
    assert json_data["error"]["code"] == code
    assert json_data["error"]["message"]
    assert "request_id" in json_data


class TestUploadValidation:
    """Test synchronous rejection of bad uploads (no job created)."""

    def post(self, client, headers, data):
        return client.post(
            "/api/upload", data=data, headers=headers, content_type="multipart/form-data"
        )

    def assert_no_job(self, client, headers):
        assert client.get("/api/jobs", headers=headers).json == {"jobs": []}
        assert list(storage.uploads_dir().iterdir()) == []

    def test_missing_file(self, client, alice_headers):
        response = self.post(client, alice_headers, {})
        assert response.status_code == 400
        assert_envelope(response.json, "NO_FILE")
        self.assert_no_job(client, alice_headers)

    def test_empty_filename(self, client, alice_headers):
        response = self.post(client, alice_headers, {"file": (io.BytesIO(b"email\n"), "")})
        assert response.status_code == 400
        assert_envelope(response.json, "NO_FILE")
        self.assert_no_job(client, alice_headers)

    def test_non_csv_extension(self, client, alice_headers):
        data = {"file": (io.BytesIO(b"email\na@b.com\n"), "list.xlsx")}
        response = self.post(client, alice_headers, data)
        assert response.status_code == 400
        assert_envelope(response.json, "INVALID_FILE_TYPE")
        assert response.json["error"]["details"] == {"file_name": "list.xlsx"}
        self.assert_no_job(client, alice_headers)

    def test_uppercase_extension_accepted(self, client, alice_headers):
        data = {"file": (io.BytesIO(b"email\na@b.com\n"), "LIST.CSV")}
        response = self.post(client, alice_headers, data)
        assert response.status_code == 200

    def test_empty_file(self, client, alice_headers):
        response = self.post(client, alice_headers, {"file": (io.BytesIO(b""), "empty.csv")})
        assert response.status_code == 400
        assert_envelope(response.json, "EMPTY_FILE")
        self.assert_no_job(client, alice_headers)

    def test_file_too_large(self, app, client, alice_headers):
        with patch.dict(app.config, {"MAX_CONTENT_LENGTH": 1024}):
            data = {"file": (io.BytesIO(b"email\n" + b"a@b.com\n" * 500), "big.csv")}
            response = self.post(client, alice_headers, data)

        assert response.status_code == 413
        assert_envelope(response.json, "FILE_TOO_LARGE")
        assert response.json["error"]["details"] == {"max_upload_mb": Config.MAX_UPLOAD_MB}
        self.assert_no_job(client, alice_headers)

    def test_too_many_concurrent_jobs(self, client, alice_headers):
        with patch("app.dispatcher.at_capacity", return_value=True):
            data = {"file": (io.BytesIO(b"email\na@b.com\n"), "test.csv")}
            response = self.post(client, alice_headers, data)

        assert response.status_code == 429
        assert_envelope(response.json, "TOO_MANY_CONCURRENT_JOBS")
        assert "running_jobs" in response.json["error"]["details"]
        assert "max_allowed" in response.json["error"]["details"]
        self.assert_no_job(client, alice_headers)

    def test_store_failure_on_create(self, client, alice_headers):
        with patch("app.lifecycle.store.create", side_effect=ConnectionError("down")):
            data = {"file": (io.BytesIO(b"email\na@b.com\n"), "test.csv")}
            response = self.post(client, alice_headers, data)

        assert response.status_code == 500
        assert_envelope(response.json, "JOB_CREATE_FAILED")
        self.assert_no_job(client, alice_headers)

    def test_disk_full_on_save_removes_partial_upload(self, client, alice_headers):
        def partial_save(self, dst, *args, **kwargs):
            with open(dst, "wb") as f:
                f.write(b"email\na@")
            raise OSError(28, "No space left on device")

        with patch("werkzeug.datastructures.FileStorage.save", partial_save):
            data = {"file": (io.BytesIO(b"email\na@b.com\n"), "test.csv")}
            response = self.post(client, alice_headers, data)

        assert response.status_code == 500
        assert_envelope(response.json, "UPLOAD_FAILED")
        self.assert_no_job(client, alice_headers)


class TestDownloadErrors:
    """Test retrieval gateway responses."""

    def test_traversal_denied(self, client):
        response = client.get("/api/download/..%2F..%2Fetc%2Fpasswd")
        assert response.status_code == 403
        assert_envelope(response.json, "ACCESS_DENIED")

    def test_bad_name_denied(self, client):
        response = client.get("/api/download/results-123.csv")
        assert response.status_code == 403

    def test_unknown_job_not_found(self, client):
        response = client.get("/api/download/results-00000000-0000-4000-8000-000000000000.csv")
        assert response.status_code == 404
        assert_envelope(response.json, "RESULT_NOT_FOUND")

    def test_filesystem_fault_is_500(self, client):
        path = storage.result_path("00000000-0000-4000-8000-000000000000")
        with patch("app.storage.resolve_result", return_value=path):
            with patch("app.send_file", side_effect=PermissionError("denied")):
                response = client.get(f"/api/download/{path.name}")
        assert response.status_code == 500
        assert_envelope(response.json, "DOWNLOAD_FAILED")


class TestGenericErrors:
    """Test framework-level error handling."""

    def test_unknown_route_is_json_404(self, client):
        response = client.get("/no/such/route")
        assert response.status_code == 404
        assert_envelope(response.json, "NOT_FOUND")

    def test_unhandled_exception_is_generic_500(self, client, alice_headers):
        with patch("app.lifecycle.list_recent", side_effect=RuntimeError("secret detail")):
            response = client.get("/api/jobs", headers=alice_headers)
        assert response.status_code == 500
        assert_envelope(response.json, "INTERNAL_ERROR")
        assert "secret detail" not in response.get_data(as_text=True)


class TestVersionEndpoints:
    """Test version information in API responses."""

    def test_metrics_includes_server_version(self, client):
        """Test that /metrics includes server_version."""
        response = client.get("/metrics")
        assert response.status_code == 200
        json_data = response.json

        assert json_data["server_version"] == Config.VERSION
        assert json_data["status"] == "ok"
        assert "timestamp" in json_data
        assert json_data["validator_mode"] == "syntax"
        assert json_data["store_backend"] == "memory"
        assert json_data["jobs"]["running"] == 0
        assert json_data["jobs"]["processing"] == 0
        assert "storage" in json_data


class TestRequestIdTracking:
    """Test request ID tracking in responses."""

    def test_response_includes_request_id_header(self, client):
        """Test that response includes X-Request-ID header."""
        response = client.get("/health")
        assert "X-Request-ID" in response.headers
        assert len(response.headers["X-Request-ID"]) > 0

    def test_provided_request_id_is_echoed(self, client):
        """Test that provided request ID is echoed back."""
        custom_id = "my-custom-request-id-12345"
        response = client.get("/health", headers={"X-Request-ID": custom_id})
        assert response.headers["X-Request-ID"] == custom_id

    def test_error_response_includes_request_id(self, client, alice_headers):
        """Test that error responses include request_id field."""
        response = client.post(
            "/api/upload",
            data={},
            content_type="multipart/form-data",
            headers={**alice_headers, "X-Request-ID": "test-req-123"},
        )

        assert response.status_code == 400
        assert response.json["request_id"] == "test-req-123"
