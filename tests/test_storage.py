"""
Tests for the local and S3 storage backends.
"""

import hashlib
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from pdfa_backend.configuration import load_settings
from pdfa_backend.storage import LocalStorage, S3Storage, build_storage, content_key

DATA = b"%PDF-1.4 storage test"


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "HeadObject")


class TestContentKey:
    def test_key_is_content_addressed(self):
        digest = hashlib.sha256(DATA).hexdigest()
        assert content_key(DATA, "originals") == f"originals/{digest}.pdf"

    def test_prefix_is_sanitized(self):
        assert content_key(DATA, "Converted Files").startswith("converted-files/")


class TestLocalStorage:
    """Tests for LocalStorage."""

    def test_put_read_delete(self, tmp_path):
        storage = LocalStorage(tmp_path / "files")
        key = storage.put(DATA, "originals")

        assert storage.exists(key) is True
        assert storage.read(key) == DATA
        assert storage.delete(key) is True
        assert storage.exists(key) is False
        assert storage.delete(key) is False

    def test_identical_content_shares_a_key(self, tmp_path):
        storage = LocalStorage(tmp_path / "files")
        assert storage.put(DATA, "originals") == storage.put(DATA, "originals")
        assert len(list((tmp_path / "files" / "originals").iterdir())) == 1

    def test_key_outside_root_is_rejected(self, tmp_path):
        storage = LocalStorage(tmp_path / "files")
        with pytest.raises(ValueError):
            storage.read("../outside.pdf")


class TestS3Storage:
    """Tests for S3Storage against a mocked boto3 client."""

    def test_put_uploads_object(self):
        client = MagicMock()
        storage = S3Storage("pdfa-bucket", client=client)
        key = storage.put(DATA, "converted")

        client.put_object.assert_called_once_with(
            Bucket="pdfa-bucket", Key=key, Body=DATA, ContentType="application/pdf"
        )

    def test_read_returns_body(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": BytesIO(DATA)}
        assert S3Storage("pdfa-bucket", client=client).read("converted/x.pdf") == DATA

    def test_missing_object_does_not_exist(self):
        client = MagicMock()
        client.head_object.side_effect = _client_error("404")
        storage = S3Storage("pdfa-bucket", client=client)

        assert storage.exists("converted/x.pdf") is False
        assert storage.delete("converted/x.pdf") is False
        client.delete_object.assert_not_called()

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.head_object.side_effect = _client_error("403")
        with pytest.raises(ClientError):
            S3Storage("pdfa-bucket", client=client).exists("converted/x.pdf")

    def test_delete_existing_object(self):
        client = MagicMock()
        assert S3Storage("pdfa-bucket", client=client).delete("converted/x.pdf") is True
        client.delete_object.assert_called_once_with(Bucket="pdfa-bucket", Key="converted/x.pdf")

    def test_bucket_is_required(self):
        with pytest.raises(ValueError):
            S3Storage("", client=MagicMock())


class TestBuildStorage:
    def test_local_backend(self, tmp_path):
        settings = load_settings(overrides={"storage": {"root": str(tmp_path / "files")}}, environ={})
        storage = build_storage(settings)
        assert isinstance(storage, LocalStorage)
        assert storage.root == Path(tmp_path / "files").resolve()

    def test_unknown_backend(self):
        settings = load_settings(overrides={"storage": {"backend": "ftp"}}, environ={})
        with pytest.raises(ValueError):
            build_storage(settings)
