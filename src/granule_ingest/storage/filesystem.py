"""
Local filesystem object store.

Buckets map to directories under ``root_path``; keys are relative paths inside
them. Object metadata lives in JSON sidecars under ``root_path/.metadata`` so
listing a bucket directory shows only the staged files. Writes go to a
``.part`` file first and are renamed into place.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Any, Iterator

from granule_ingest.models import Checksum, StoredObject
from granule_ingest.storage.base import checksum_from_metadata, checksum_metadata

METADATA_DIR = ".metadata"


class FilesystemObjectStore:
    """Object store rooted at a local directory (local runs and tests)."""

    def __init__(self, name: str = "filesystem", config: dict[str, Any] | None = None):
        self.name = name
        self.config = config or {}

    @property
    def root_path(self) -> Path:
        return Path(self.config.get("root_path", "data"))

    def _resolve(self, base: Path, bucket: str, key: str) -> Path:
        """Resolve ``base/bucket/key``, rejecting keys that escape the bucket."""
        bucket_root = (base / bucket).resolve()
        full = (bucket_root / key.lstrip("/")).resolve()
        try:
            full.relative_to(bucket_root)
        except ValueError as e:
            raise ValueError(f"Path traversal detected: key '{key}' escapes bucket '{bucket}'") from e
        return full

    def object_path(self, bucket: str, key: str) -> Path:
        return self._resolve(self.root_path, bucket, key)

    def _metadata_path(self, bucket: str, key: str) -> Path:
        full = self._resolve(self.root_path / METADATA_DIR, bucket, key)
        return full.with_name(full.name + ".json")

    def _write_metadata(self, bucket: str, key: str, checksum: Checksum | None) -> None:
        meta_path = self._metadata_path(bucket, key)
        if checksum is None:
            meta_path.unlink(missing_ok=True)
            return
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps(checksum_metadata(checksum)))

    def _read_metadata(self, bucket: str, key: str) -> dict[str, str]:
        meta_path = self._metadata_path(bucket, key)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())

    def head(self, bucket: str, key: str) -> StoredObject | None:
        path = self.object_path(bucket, key)
        if not path.is_file():
            return None
        return StoredObject(
            bucket=bucket,
            key=key,
            size=path.stat().st_size,
            checksum=checksum_from_metadata(self._read_metadata(bucket, key)),
        )

    def exists(self, bucket: str, key: str) -> bool:
        return self.object_path(bucket, key).is_file()

    def _install(self, source: Path, bucket: str, key: str, checksum: Checksum | None, *, remove_source: bool) -> int:
        dest = self.object_path(bucket, key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")
        try:
            if remove_source:
                shutil.move(str(source), tmp)
            else:
                shutil.copyfile(source, tmp)
            os.replace(tmp, dest)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        self._write_metadata(bucket, key, checksum)
        return dest.stat().st_size

    def put_file(self, local_path: str | Path, bucket: str, key: str, *, checksum: Checksum | None = None) -> int:
        return self._install(Path(local_path), bucket, key, checksum, remove_source=False)

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int:
        source = self.object_path(src_bucket, src_key)
        if not source.is_file():
            raise FileNotFoundError(f"{src_bucket}/{src_key}")
        if checksum is None:
            checksum = checksum_from_metadata(self._read_metadata(src_bucket, src_key))
        return self._install(source, dst_bucket, dst_key, checksum, remove_source=False)

    def move(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int:
        size = self.copy(src_bucket, src_key, dst_bucket, dst_key, checksum=checksum)
        self.delete(src_bucket, src_key)
        return size

    def delete(self, bucket: str, key: str) -> None:
        self.object_path(bucket, key).unlink(missing_ok=True)
        self._metadata_path(bucket, key).unlink(missing_ok=True)

    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        path = self.object_path(bucket, key)
        if not path.is_file():
            raise FileNotFoundError(f"{bucket}/{key}")
        with open(path, "rb") as f:
            yield from iter(lambda: f.read(chunk_size), b"")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', root_path='{self.root_path}')"
