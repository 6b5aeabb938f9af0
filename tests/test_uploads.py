"""
Tests for the receipt upload clients
"""

import json
import logging

import httpx
import pytest

from loan_ledger.exceptions import DependencyError
from loan_ledger.uploads import HttpUploadService, InMemoryUploadService, ReceiptFile


RECEIPT = ReceiptFile(filename="receipt.jpg", content=b"\xff\xd8jpeg-bytes", content_type="image/jpeg")


class TestReceiptFile:

    def test_empty_file_refused(self):
        with pytest.raises(ValueError):
            ReceiptFile(filename="empty.jpg", content=b"")


class TestInMemoryUploadService:
    """Test InMemoryUploadService for development and testing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.service = InMemoryUploadService()

    def test_upload_returns_unique_urls(self):
        first = self.service.upload(RECEIPT, "receipts")
        second = self.service.upload(RECEIPT, "receipts")

        assert first != second
        assert first.startswith("memory://receipts/")
        assert first.endswith("receipt.jpg")
        assert self.service.files[first] == RECEIPT


class TestHttpUploadService:
    """Test the HTTP client against a mock transport"""

    def make_service(self, handler, api_key="secret-key"):
        self.requests = []

        def recording_handler(request):
            self.requests.append(request)
            return handler(request)

        return HttpUploadService(
            "https://images.example.com/api/",
            api_key=api_key,
            transport=httpx.MockTransport(recording_handler)
        )

    def test_successful_upload(self):
        service = self.make_service(
            lambda request: httpx.Response(200, json={"secure_url": "https://cdn.example.com/r/1.jpg"})
        )

        url = service.upload(RECEIPT, "receipts/loan-1")

        assert url == "https://cdn.example.com/r/1.jpg"
        request = self.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://images.example.com/api/upload"
        assert request.headers["Authorization"] == "Bearer secret-key"
        body = request.read()
        assert b"receipts/loan-1" in body
        assert b"receipt.jpg" in body
        service.close()

    def test_plain_url_field_accepted(self):
        service = self.make_service(
            lambda request: httpx.Response(201, json={"url": "https://cdn.example.com/r/2.jpg"}),
            api_key=None
        )

        assert service.upload(RECEIPT, "receipts") == "https://cdn.example.com/r/2.jpg"
        assert "Authorization" not in self.requests[0].headers

    def test_server_error(self, caplog):
        service = self.make_service(lambda request: httpx.Response(500, text="storage offline"))

        with caplog.at_level(logging.WARNING, logger="loan_ledger.uploads"):
            with pytest.raises(DependencyError) as exc_info:
                service.upload(RECEIPT, "receipts")

        assert any(r.name == "loan_ledger.uploads" for r in caplog.records)

        assert exc_info.value.operation == "upload"
        assert exc_info.value.context["status_code"] == 500
        assert exc_info.value.retryable

    def test_non_json_response(self):
        service = self.make_service(lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(DependencyError):
            service.upload(RECEIPT, "receipts")

    def test_response_without_url(self):
        service = self.make_service(
            lambda request: httpx.Response(200, content=json.dumps({"id": "abc"}).encode())
        )

        with pytest.raises(DependencyError):
            service.upload(RECEIPT, "receipts")

    def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = self.make_service(refuse)

        with pytest.raises(DependencyError) as exc_info:
            service.upload(RECEIPT, "receipts")

        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    def test_health_check(self):
        healthy = self.make_service(lambda request: httpx.Response(200, json={"status": "ok"}))
        assert healthy.health_check()
        assert str(self.requests[0].url) == "https://images.example.com/api/health"

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert not self.make_service(refuse).health_check()
