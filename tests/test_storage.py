"""
Tests for staging-area object stores.
"""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from granule_ingest.exceptions import ConfigurationError
from granule_ingest.models import Checksum
from granule_ingest.storage import (
    FilesystemObjectStore,
    ObjectStore,
    S3ObjectStore,
    build_object_store,
    checksum_from_metadata,
    checksum_metadata,
)
from granule_ingest.storage.s3 import SINGLE_COPY_LIMIT, is_not_found

CHECKSUM = Checksum("md5", "9e107d9d372bb6826bd81d3542a419d6")


def not_found():
    return ClientError({"Error": {"Code": "404", "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}}, "HeadObject")


class TestChecksumMetadata:
    def test_round_trip(self):
        assert checksum_from_metadata(checksum_metadata(CHECKSUM)) == CHECKSUM

    def test_empty(self):
        assert checksum_metadata(None) == {}
        assert checksum_from_metadata(None) is None

    def test_keys_case_insensitive(self):
        assert checksum_from_metadata({"ChecksumType": "MD5", "Checksum": "abc"}) == Checksum("md5", "abc")


class TestFilesystemObjectStore:
    """Tests for FilesystemObjectStore."""

    @pytest.fixture
    def fs_store(self, tmp_path):
        return FilesystemObjectStore("filesystem", {"root_path": str(tmp_path / "root")})

    @pytest.fixture
    def source(self, tmp_path):
        path = tmp_path / "source.hdf"
        path.write_bytes(b"granule bytes")
        return path

    def test_satisfies_protocol(self, fs_store):
        assert isinstance(fs_store, ObjectStore)

    def test_head_missing(self, fs_store):
        assert fs_store.head("private", "a/b.hdf") is None
        assert fs_store.exists("private", "a/b.hdf") is False

    def test_put_and_head(self, fs_store, source):
        size = fs_store.put_file(source, "private", "dir/b.hdf", checksum=CHECKSUM)
        assert size == len(b"granule bytes")

        stored = fs_store.head("private", "dir/b.hdf")
        assert stored.size == size
        assert stored.checksum == CHECKSUM
        assert source.exists()

    def test_metadata_not_listed_with_objects(self, fs_store, source):
        fs_store.put_file(source, "private", "dir/b.hdf", checksum=CHECKSUM)
        listed = [p.name for p in fs_store.object_path("private", "dir").iterdir()]
        assert listed == ["b.hdf"]

    def test_overwrite_without_checksum_drops_metadata(self, fs_store, source):
        fs_store.put_file(source, "private", "b.hdf", checksum=CHECKSUM)
        fs_store.put_file(source, "private", "b.hdf")
        assert fs_store.head("private", "b.hdf").checksum is None

    def test_copy_keeps_source_metadata(self, fs_store, source):
        fs_store.put_file(source, "private", "a.hdf", checksum=CHECKSUM)
        fs_store.copy("private", "a.hdf", "public", "b.hdf")
        assert fs_store.head("public", "b.hdf").checksum == CHECKSUM
        assert fs_store.exists("private", "a.hdf")

    def test_copy_missing_source(self, fs_store):
        with pytest.raises(FileNotFoundError):
            fs_store.copy("private", "missing", "private", "b.hdf")

    def test_move(self, fs_store, source):
        fs_store.put_file(source, "private", "a.hdf.tmp")
        fs_store.move("private", "a.hdf.tmp", "private", "a.hdf", checksum=CHECKSUM)
        assert not fs_store.exists("private", "a.hdf.tmp")
        assert fs_store.head("private", "a.hdf").checksum == CHECKSUM

    def test_delete_missing_is_noop(self, fs_store):
        fs_store.delete("private", "missing")

    def test_iter_chunks(self, fs_store, source):
        fs_store.put_file(source, "private", "a.hdf")
        assert b"".join(fs_store.iter_chunks("private", "a.hdf", chunk_size=4)) == b"granule bytes"

    def test_rejects_path_traversal(self, fs_store):
        with pytest.raises(ValueError, match="Path traversal"):
            fs_store.object_path("private", "../../etc/passwd")


class TestS3ObjectStore:
    """Tests for S3ObjectStore against a mocked boto3 client."""

    def test_client_kwargs(self):
        store = S3ObjectStore(
            "s3",
            {"region": "us-west-2", "endpoint_url": "http://localhost:9000", "access_key_id": "AK", "secret_access_key": "SK"},
        )
        assert store.client_kwargs() == {
            "region_name": "us-west-2",
            "endpoint_url": "http://localhost:9000",
            "aws_access_key_id": "AK",
            "aws_secret_access_key": "SK",
        }

    def test_head(self):
        client = MagicMock()
        client.head_object.return_value = {"ContentLength": 12, "Metadata": {"checksumtype": "md5", "checksum": "abc"}}
        stored = S3ObjectStore(client=client).head("private", "a.hdf")
        assert stored.size == 12
        assert stored.checksum == Checksum("md5", "abc")

    def test_head_not_found(self):
        client = MagicMock()
        client.head_object.side_effect = not_found()
        assert S3ObjectStore(client=client).head("private", "a.hdf") is None

    def test_head_other_errors_propagate(self):
        client = MagicMock()
        client.head_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "HeadObject")
        with pytest.raises(ClientError):
            S3ObjectStore(client=client).head("private", "a.hdf")

    def test_put_file_records_checksum(self, tmp_path):
        path = tmp_path / "a.hdf"
        path.write_bytes(b"12345")
        client = MagicMock()

        size = S3ObjectStore(client=client).put_file(path, "private", "dir/a.hdf", checksum=CHECKSUM)

        assert size == 5
        client.upload_file.assert_called_once_with(
            str(path), "private", "dir/a.hdf", ExtraArgs={"Metadata": checksum_metadata(CHECKSUM)}
        )

    def test_small_copy_uses_copy_object(self):
        client = MagicMock()
        client.head_object.return_value = {"ContentLength": 10, "Metadata": {}}
        S3ObjectStore(client=client).copy("src", "a", "dst", "b", checksum=CHECKSUM)
        kwargs = client.copy_object.call_args.kwargs
        assert kwargs["CopySource"] == {"Bucket": "src", "Key": "a"}
        assert kwargs["Metadata"] == checksum_metadata(CHECKSUM)
        assert kwargs["MetadataDirective"] == "REPLACE"
        client.copy.assert_not_called()

    def test_large_copy_uses_managed_copy(self):
        client = MagicMock()
        client.head_object.return_value = {"ContentLength": SINGLE_COPY_LIMIT + 1, "Metadata": {"checksum": "x"}}
        S3ObjectStore(client=client).copy("src", "a", "dst", "b")
        client.copy.assert_called_once()
        client.copy_object.assert_not_called()

    def test_move_deletes_source(self):
        client = MagicMock()
        client.head_object.return_value = {"ContentLength": 1, "Metadata": {}}
        S3ObjectStore(client=client).move("private", "a.tmp", "private", "a")
        client.delete_object.assert_called_once_with(Bucket="private", Key="a.tmp")

    def test_iter_chunks_closes_body(self):
        body = MagicMock()
        body.iter_chunks.return_value = iter([b"ab", b"cd"])
        client = MagicMock()
        client.get_object.return_value = {"Body": body}
        assert list(S3ObjectStore(client=client).iter_chunks("private", "a")) == [b"ab", b"cd"]
        body.close.assert_called_once()

    def test_is_not_found(self):
        assert is_not_found(not_found())
        assert is_not_found(ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject"))
        assert not is_not_found(ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject"))
        assert not is_not_found(io.UnsupportedOperation())


class TestBuildObjectStore:
    def test_default_is_s3(self):
        assert isinstance(build_object_store(None), S3ObjectStore)

    def test_filesystem(self, tmp_path):
        store = build_object_store({"type": "filesystem", "root_path": str(tmp_path)})
        assert isinstance(store, FilesystemObjectStore)
        assert store.root_path == tmp_path

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="Unsupported storage type"):
            build_object_store({"type": "gcs"})
