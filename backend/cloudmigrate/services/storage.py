"""Provider adapters: list, fetch and put against one cloud storage."""

import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from google.api_core.exceptions import GoogleAPIError
from google.cloud import storage
from google.oauth2.credentials import Credentials

from cloudmigrate.core.config import settings
from cloudmigrate.schemas.transfer import EndpointRef
from cloudmigrate.services.errors import AuthFailure

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


@dataclass
class ListEntry:
    path: str
    is_folder: bool
    size: int | None = None


@dataclass
class ListPage:
    items: list[ListEntry] = field(default_factory=list)
    next_token: str | None = None


@dataclass
class FetchedObject:
    data: bytes
    content_type: str | None = None


@dataclass
class PutOutcome:
    id: str | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.id) and self.error is None


class ProviderAdapter(ABC):
    kind: str = ""
    requires_credential: bool = False

    @abstractmethod
    def list(self, prefix: str, continuation_token: str | None = None) -> ListPage:
        """Return one page of the direct children of ``prefix``."""

    @abstractmethod
    def fetch(self, path: str) -> FetchedObject:
        ...

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str | None) -> PutOutcome:
        ...


def _folder_prefix(prefix: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/" if prefix else ""


class LocalAdapter(ProviderAdapter):
    """A directory per bucket under ``LOCAL_STORAGE_DIR``. Used for dev setups and tests."""

    kind = "local"

    def __init__(self, bucket: str, base_dir: str | None = None, page_size: int | None = None):
        self.root = Path(base_dir or settings.local_storage_dir) / bucket
        self.page_size = page_size or settings.listing_page_size

    def _target(self, path: str) -> Path:
        target = (self.root / path.strip("/")).resolve()
        if self.root.resolve() not in (target, *target.parents):
            raise StorageError(f"Path escapes bucket root: {path}")
        return target

    def list(self, prefix: str, continuation_token: str | None = None) -> ListPage:
        folder = self._target(prefix)
        if not folder.is_dir():
            raise StorageError(f"Local folder not found: {prefix}")
        names = sorted(os.listdir(folder))
        start = int(continuation_token) if continuation_token else 0
        end = start + self.page_size
        base = _folder_prefix(prefix)
        items = []
        for name in names[start:end]:
            child = folder / name
            if child.is_dir():
                items.append(ListEntry(path=f"{base}{name}", is_folder=True))
            else:
                items.append(ListEntry(path=f"{base}{name}", is_folder=False, size=child.stat().st_size))
        return ListPage(items=items, next_token=str(end) if end < len(names) else None)

    def fetch(self, path: str) -> FetchedObject:
        target = self._target(path)
        if not target.is_file():
            raise StorageError(f"Local object not found: {path}")
        content_type, _ = mimetypes.guess_type(target.name)
        return FetchedObject(data=target.read_bytes(), content_type=content_type)

    def put(self, path: str, data: bytes, content_type: str | None) -> PutOutcome:
        target = self._target(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return PutOutcome(id=path.strip("/"))


class S3Adapter(ProviderAdapter):
    kind = "s3"

    def __init__(self, bucket: str, page_size: int | None = None):
        self.bucket = bucket
        self.page_size = page_size or settings.listing_page_size
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            aws_access_key_id=settings.s3_access_key or None,
            aws_secret_access_key=settings.s3_secret_key or None,
        )

    def list(self, prefix: str, continuation_token: str | None = None) -> ListPage:
        base = _folder_prefix(prefix)
        kwargs = {"Bucket": self.bucket, "Prefix": base, "Delimiter": "/", "MaxKeys": self.page_size}
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token
        try:
            resp = self.client.list_objects_v2(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 listing failed for {self.bucket}/{base}: {exc}") from exc

        items = [ListEntry(path=p["Prefix"].rstrip("/"), is_folder=True) for p in resp.get("CommonPrefixes", [])]
        for obj in resp.get("Contents", []):
            # Zero-byte "folder marker" objects share the prefix key.
            if obj["Key"] == base:
                continue
            items.append(ListEntry(path=obj["Key"], is_folder=False, size=obj.get("Size")))
        next_token = resp.get("NextContinuationToken") if resp.get("IsTruncated") else None
        return ListPage(items=items, next_token=next_token)

    def fetch(self, path: str) -> FetchedObject:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=path.lstrip("/"))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 download failed for {self.bucket}/{path}: {exc}") from exc
        return FetchedObject(data=obj["Body"].read(), content_type=obj.get("ContentType"))

    def put(self, path: str, data: bytes, content_type: str | None) -> PutOutcome:
        key = path.lstrip("/")
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            resp = self.client.put_object(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 upload failed for {self.bucket}/{key}: {exc}") from exc
        etag = (resp.get("ETag") or "").strip('"')
        return PutOutcome(id=f"{key}@{etag}" if etag else None)


class GCSAdapter(ProviderAdapter):
    kind = "gcs"
    requires_credential = True

    def __init__(self, bucket: str, credential: str | None, page_size: int | None = None):
        if not credential:
            raise AuthFailure("Google Cloud Storage requires a bearer token")
        self.page_size = page_size or settings.listing_page_size
        self.client = storage.Client(
            project=settings.gcs_project or None,
            credentials=Credentials(token=credential),
        )
        self.bucket = self.client.bucket(bucket)

    def list(self, prefix: str, continuation_token: str | None = None) -> ListPage:
        base = _folder_prefix(prefix)
        try:
            iterator = self.client.list_blobs(
                self.bucket,
                prefix=base,
                delimiter="/",
                page_size=self.page_size,
                page_token=continuation_token,
            )
            page = next(iterator.pages)
            blobs = list(page)
            prefixes = sorted(page.prefixes)
        except GoogleAPIError as exc:
            raise StorageError(f"GCS listing failed for {self.bucket.name}/{base}: {exc}") from exc

        items = [ListEntry(path=p.rstrip("/"), is_folder=True) for p in prefixes]
        items.extend(ListEntry(path=b.name, is_folder=False, size=b.size) for b in blobs if b.name != base)
        return ListPage(items=items, next_token=iterator.next_page_token)

    def fetch(self, path: str) -> FetchedObject:
        try:
            blob = self.bucket.get_blob(path.lstrip("/"))
            if blob is None:
                raise StorageError(f"GCS object not found: {self.bucket.name}/{path}")
            data = blob.download_as_bytes()
        except GoogleAPIError as exc:
            raise StorageError(f"GCS download failed for {self.bucket.name}/{path}: {exc}") from exc
        return FetchedObject(data=data, content_type=blob.content_type)

    def put(self, path: str, data: bytes, content_type: str | None) -> PutOutcome:
        blob = self.bucket.blob(path.lstrip("/"))
        try:
            blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        except GoogleAPIError as exc:
            raise StorageError(f"GCS upload failed for {self.bucket.name}/{path}: {exc}") from exc
        return PutOutcome(id=blob.id)


AdapterFactory = Callable[[EndpointRef, str | None], ProviderAdapter]

_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    LocalAdapter.kind: LocalAdapter,
    S3Adapter.kind: S3Adapter,
    GCSAdapter.kind: GCSAdapter,
}


def provider_kinds() -> list[str]:
    return sorted(_ADAPTERS)


def ensure_credential(ref: EndpointRef, credential: str | None) -> None:
    adapter_cls = _ADAPTERS.get(ref.kind)
    if adapter_cls is None:
        raise StorageError(f"Unsupported storage provider: {ref.kind}")
    if adapter_cls.requires_credential and not credential:
        raise AuthFailure(f"A bearer token is required for provider '{ref.kind}'")


def build_adapter(ref: EndpointRef, credential: str | None) -> ProviderAdapter:
    logger.debug("Building %s adapter for bucket %s", ref.kind, ref.bucket)
    if ref.kind == "local":
        return LocalAdapter(ref.bucket)
    if ref.kind == "s3":
        return S3Adapter(ref.bucket)
    if ref.kind == "gcs":
        return GCSAdapter(ref.bucket, credential)
    raise StorageError(f"Unsupported storage provider: {ref.kind}")
