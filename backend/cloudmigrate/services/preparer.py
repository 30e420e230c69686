import mimetypes

from cloudmigrate.schemas.transfer import ItemTransferDescriptor, JobParameters, TransferItem
from cloudmigrate.services.errors import PreparationFailure

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def infer_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def prepare_item(item: TransferItem, params: JobParameters) -> ItemTransferDescriptor:
    """Merge one leaf item with the job parameters into a ready-to-run descriptor.

    Pure function of its inputs: the same ``(item, params)`` always produces an
    equal descriptor.
    """
    if not item.path.strip("/"):
        raise PreparationFailure("Transfer item has an empty path")
    filename = item.path.rsplit("/", 1)[-1]
    if not filename:
        raise PreparationFailure(f"Transfer item '{item.path}' has no filename")

    dest_path = join_path(params.destination.folder, item.relative_path or filename)
    if not dest_path:
        raise PreparationFailure(f"Cannot resolve destination path for '{item.path}'")

    return ItemTransferDescriptor(
        source=params.source,
        destination=params.destination,
        source_path=item.path,
        filename=filename,
        relative_path=item.relative_path or filename,
        dest_path=dest_path,
        content_type=infer_content_type(filename),
        size=item.size,
        source_credential=params.source_credential,
        destination_credential=params.destination_credential,
    )


def prepare_items(items: list[TransferItem], params: JobParameters) -> list[ItemTransferDescriptor]:
    return [prepare_item(item, params) for item in items]
