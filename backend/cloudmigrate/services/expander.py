import logging
from collections.abc import Iterable, Iterator

from cloudmigrate.schemas.transfer import SelectionEntry, TransferItem
from cloudmigrate.services.errors import ExpansionFailure
from cloudmigrate.services.storage import ListEntry, ProviderAdapter

logger = logging.getLogger(__name__)


def basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _parent(path: str) -> str:
    path = path.rstrip("/")
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _relative_to(path: str, base: str) -> str:
    base = base.rstrip("/")
    if base and path.startswith(base + "/"):
        return path[len(base) + 1 :]
    return path.lstrip("/")


def _iter_children(adapter: ProviderAdapter, folder: str) -> Iterator[ListEntry]:
    """Yield every child of ``folder``, fetching pages lazily until the token runs out."""
    token: str | None = None
    pages = 0
    while True:
        try:
            page = adapter.list(folder, token)
        except Exception as exc:  # noqa: BLE001
            raise ExpansionFailure(f"Listing '{folder}' failed after {pages} page(s): {exc}") from exc
        pages += 1
        yield from page.items
        token = page.next_token
        if not token:
            return


def expand_selection(entries: Iterable[SelectionEntry], adapter: ProviderAdapter) -> list[TransferItem]:
    """Flatten a selection into leaf items, depth-first in the adapter's listing order.

    Folders are walked with an explicit stack so arbitrarily deep trees do not hit
    the interpreter recursion limit. Any listing error aborts the whole expansion.
    """
    items: list[TransferItem] = []
    selected = 0
    for entry in entries:
        selected += 1
        if not entry.is_folder:
            items.append(
                TransferItem(
                    path=entry.path,
                    filename=basename(entry.path),
                    relative_path=entry.relative_path or basename(entry.path),
                )
            )
            continue

        base = _parent(entry.path)
        stack = [_iter_children(adapter, entry.path)]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                continue
            if child.is_folder:
                stack.append(_iter_children(adapter, child.path))
                continue
            items.append(
                TransferItem(
                    path=child.path,
                    filename=basename(child.path),
                    relative_path=_relative_to(child.path, base),
                    size=child.size,
                )
            )

    logger.info("Expanded %d selection entries into %d items", selected, len(items))
    return items
