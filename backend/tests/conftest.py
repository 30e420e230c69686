import os
from collections import defaultdict

# Set default env vars for tests before any app imports
os.environ.setdefault("AUTH0_SKIP_VERIFY", "true")
os.environ.setdefault("TASK_DISPATCH", "inline")
os.environ.setdefault("DATABASE_DSN", "sqlite:///./test_cloudmigrate.db")
os.environ.setdefault("LOCAL_STORAGE_DIR", "./test_data")

import pytest  # noqa: E402

from cloudmigrate.db.base import Base  # noqa: E402
from cloudmigrate.db.session import SessionLocal, engine  # noqa: E402
from cloudmigrate.models import JobRecord  # noqa: E402
from cloudmigrate.schemas.transfer import EndpointRef  # noqa: E402
from cloudmigrate.services.coordinator import JobCoordinator  # noqa: E402
from cloudmigrate.services.storage import (  # noqa: E402
    FetchedObject,
    ListEntry,
    ListPage,
    ProviderAdapter,
    PutOutcome,
    StorageError,
)


class FakeStore:
    """In-memory buckets shared by every FakeProvider built from it."""

    def __init__(self, page_size: int = 2):
        self.buckets: dict[str, dict[str, bytes]] = defaultdict(dict)
        self.page_size = page_size
        # prefix -> index of the listing page that raises
        self.fail_list: dict[str, int] = {}
        self.fail_fetch: dict[str, str] = {}
        self.empty_ids = False
        self.on_fetch = None
        self.list_calls: list[tuple[str, str | None]] = []

    def add(self, bucket: str, *paths: str, data: bytes = b"payload") -> None:
        for path in paths:
            self.buckets[bucket][path] = data

    def adapter(self, ref: EndpointRef, credential: str | None = None) -> "FakeProvider":
        return FakeProvider(self, ref.bucket)


class FakeProvider(ProviderAdapter):
    kind = "local"

    def __init__(self, store: FakeStore, bucket: str):
        self.store = store
        self.objects = store.buckets[bucket]

    def list(self, prefix: str, continuation_token: str | None = None) -> ListPage:
        self.store.list_calls.append((prefix, continuation_token))
        folder = prefix.strip("/")
        base = f"{folder}/" if folder else ""
        start = int(continuation_token) if continuation_token else 0
        fail_page = self.store.fail_list.get(folder)
        if fail_page is not None and start >= fail_page * self.store.page_size:
            raise StorageError(f"listing {folder} refused")

        children: dict[str, bool] = {}
        for key in sorted(self.objects):
            if not key.startswith(base):
                continue
            head, sep, _ = key[len(base) :].partition("/")
            children.setdefault(f"{base}{head}", bool(sep))

        names = sorted(children)
        end = start + self.store.page_size
        items = [
            ListEntry(path=p, is_folder=children[p], size=None if children[p] else len(self.objects[p]))
            for p in names[start:end]
        ]
        return ListPage(items=items, next_token=str(end) if end < len(names) else None)

    def fetch(self, path: str) -> FetchedObject:
        if self.store.on_fetch is not None:
            self.store.on_fetch(path)
        if path in self.store.fail_fetch:
            raise StorageError(self.store.fail_fetch[path])
        if path not in self.objects:
            raise StorageError(f"not found: {path}")
        return FetchedObject(data=self.objects[path])

    def put(self, path: str, data: bytes, content_type: str | None) -> PutOutcome:
        self.objects[path] = data
        return PutOutcome(id=None if self.store.empty_ids else f"fake://{path}")


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def coordinator(store):
    return JobCoordinator(
        session_factory=SessionLocal,
        adapter_factory=store.adapter,
        concurrency=4,
        checkpoint_batch_size=2,
        child_batch_size=200,
    )


@pytest.fixture
def reload(db):
    """Re-read a record after another session changed it."""

    def _reload(instance_id: str) -> JobRecord:
        db.expire_all()
        return db.get(JobRecord, instance_id)

    return _reload
