"""
Tests for the S3-compatible backend wrapper.

boto3 clients are stubbed with botocore's Stubber or replaced by mocks. No
network access.
"""

import io
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from recipestream.exceptions import NotFound, PermanentError, QuotaExceeded, TransientError
from recipestream.storage.backends import BackendSettings, S3Backend, classify_error, normalize_key


def _client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@pytest.fixture
def settings() -> BackendSettings:
    return BackendSettings(
        name="s3-test",
        bucket="recipe-media",
        signing_key="signing-secret",
        region="us-east-1",
        access_key_id="AKIATEST",
        secret_access_key="secret",
    )


@pytest.fixture
def stubbed(settings):
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="AKIATEST",
        aws_secret_access_key="secret",
    )
    backend = S3Backend(settings, client=client)
    with Stubber(client) as stubber:
        yield backend, stubber
        stubber.assert_no_pending_responses()


class TestNormalizeKey:
    def test_strips_and_collapses_slashes(self):
        assert normalize_key("  /videos//abc///seg.ts ") == "videos/abc/seg.ts"

    @pytest.mark.parametrize("key", ["", "   ", "/", "videos/../secret", "videos/a\nb", "videos/<script>"])
    def test_rejects_unsafe_keys(self, key):
        with pytest.raises(PermanentError):
            normalize_key(key)


class TestClassifyError:
    @pytest.mark.parametrize(
        ("code", "status", "expected"),
        [
            ("NoSuchKey", 404, NotFound),
            ("404", 404, NotFound),
            ("SlowDown", 503, TransientError),
            ("InternalError", 500, TransientError),
            ("TooManyRequests", 429, TransientError),
            ("XMinioStorageFull", 507, QuotaExceeded),
            ("QuotaExceeded", 403, QuotaExceeded),
            ("AccessDenied", 403, PermanentError),
            ("InvalidArgument", 400, PermanentError),
        ],
    )
    def test_client_errors(self, code, status, expected):
        error = classify_error(_client_error(code, status), "videos/a.ts", "s3-test")

        assert isinstance(error, expected)
        assert error.key == "videos/a.ts"

    def test_connection_failures_are_transient(self):
        error = classify_error(EndpointConnectionError(endpoint_url="http://minio:9000"), None, "s3-test")

        assert isinstance(error, TransientError)
        assert error.backend == "s3-test"

    def test_read_timeout_is_transient(self):
        error = classify_error(ReadTimeoutError(endpoint_url="http://minio:9000"), "k", "s3-test")

        assert isinstance(error, TransientError)

    def test_unknown_exception_is_permanent(self):
        assert isinstance(classify_error(RuntimeError("boom"), "k", "s3-test"), PermanentError)


class TestS3Backend:
    def test_repr_hides_secrets(self, settings):
        assert "secret" not in repr(settings)
        assert "signing" not in repr(settings)

    def test_put_object_returns_unquoted_etag(self, stubbed):
        backend, stubber = stubbed
        stubber.add_response("put_object", {"ETag": '"0cc175b9c0f1b6a831c399e269772661"'})

        etag = backend.put_object("videos/a.m3u8", b"a", "application/vnd.apple.mpegurl", "public, max-age=300")

        assert etag == "0cc175b9c0f1b6a831c399e269772661"

    def test_put_object_throttled_raises_transient(self, stubbed):
        backend, stubber = stubbed
        stubber.add_client_error("put_object", service_error_code="SlowDown", http_status_code=503)

        with pytest.raises(TransientError):
            backend.put_object("videos/a.m3u8", b"a", "application/vnd.apple.mpegurl", "public, max-age=300")

    def test_head_object_maps_fields(self, stubbed):
        backend, stubber = stubbed
        stubber.add_response(
            "head_object",
            {
                "ContentLength": 1234,
                "ETag": '"abc123"',
                "ContentType": "video/mp2t",
                "CacheControl": "public, max-age=86400, immutable",
            },
        )

        head = backend.head_object("/videos/a/seg.ts")

        assert head == {
            "size": 1234,
            "etag": "abc123",
            "content_type": "video/mp2t",
            "cache_control": "public, max-age=86400, immutable",
        }

    def test_head_object_missing_raises_not_found(self, stubbed):
        backend, stubber = stubbed
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)

        with pytest.raises(NotFound):
            backend.head_object("videos/missing.ts")

    def test_get_object_reads_body(self, stubbed):
        backend, stubber = stubbed
        body = StreamingBody(io.BytesIO(b"segment"), len(b"segment"))
        stubber.add_response("get_object", {"Body": body, "ContentLength": 7})

        assert backend.get_object("videos/a/seg.ts") == b"segment"

    def test_delete_object_access_denied_is_permanent(self, stubbed):
        backend, stubber = stubbed
        stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)

        with pytest.raises(PermanentError):
            backend.delete_object("videos/a/seg.ts")

    def test_copy_from_uses_managed_multipart_copy(self, settings):
        client = MagicMock()
        backend = S3Backend(settings, client=client)
        source_client = MagicMock()
        source = S3Backend(
            BackendSettings(name="legacy", bucket="legacy-media", signing_key="x", region="us-east-1"),
            client=source_client,
        )

        backend.copy_from(source, "/masters/r1/0/master.mp4", "video/mp4", "private, no-store")

        client.copy_object.assert_not_called()
        client.copy.assert_called_once()
        args, kwargs = client.copy.call_args
        assert args == ({"Bucket": "legacy-media", "Key": "masters/r1/0/master.mp4"}, "recipe-media", "masters/r1/0/master.mp4")
        assert kwargs["ExtraArgs"] == {
            "MetadataDirective": "REPLACE",
            "ContentType": "video/mp4",
            "CacheControl": "private, no-store",
        }
        assert kwargs["SourceClient"] is source_client
        assert kwargs["Config"].multipart_chunksize >= 64 * 1024 * 1024

    def test_copy_from_rejection_is_classified(self, settings):
        client = MagicMock()
        client.copy.side_effect = _client_error("InvalidRequest", 400, "UploadPartCopy")
        backend = S3Backend(settings, client=client)
        source = S3Backend(
            BackendSettings(name="legacy", bucket="legacy-media", signing_key="x", region="us-east-1"),
            client=MagicMock(),
        )

        with pytest.raises(PermanentError):
            backend.copy_from(source, "masters/r1/0/master.mp4", "video/mp4", "private, no-store")

    def test_presigned_get_is_generated_offline(self, settings):
        backend = S3Backend(settings)

        url = backend.presigned_get("videos/a/seg.ts", 60)

        assert "recipe-media" in url
        assert "videos/a/seg.ts" in url
        assert "X-Amz-Expires=60" in url

    def test_shares_endpoint_requires_same_credentials(self, settings):
        same = BackendSettings(**{**settings.__dict__, "name": "other", "bucket": "other-bucket"})
        different = BackendSettings(**{**settings.__dict__, "name": "third", "access_key_id": "AKIAOTHER"})

        backend = S3Backend(settings, client=object())

        assert backend.shares_endpoint_with(S3Backend(same, client=object())) is True
        assert backend.shares_endpoint_with(S3Backend(different, client=object())) is False
