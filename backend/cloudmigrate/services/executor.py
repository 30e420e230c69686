import logging

from cloudmigrate.schemas.transfer import ItemTransferDescriptor, ItemTransferResult
from cloudmigrate.services.errors import ItemTransferFailure
from cloudmigrate.services.storage import AdapterFactory, build_adapter

logger = logging.getLogger(__name__)


class TransferExecutor:
    """Copies one item between providers. Provider errors become failed results, never exceptions."""

    def __init__(self, adapter_factory: AdapterFactory = build_adapter):
        self.adapter_factory = adapter_factory

    def _failure(self, descriptor: ItemTransferDescriptor, message: str, content_length: int = 0) -> ItemTransferResult:
        return ItemTransferResult(
            filename=descriptor.filename,
            source_path=descriptor.source_path,
            dest_path=descriptor.dest_path,
            content_length=content_length,
            success=False,
            error_message=message,
        )

    def execute(self, descriptor: ItemTransferDescriptor) -> ItemTransferResult:
        content_length = 0
        try:
            source = self.adapter_factory(descriptor.source, descriptor.source_credential)
            destination = self.adapter_factory(descriptor.destination, descriptor.destination_credential)

            logger.info("Downloading %s from %s", descriptor.source_path, descriptor.source.kind)
            fetched = source.fetch(descriptor.source_path)
            content_length = len(fetched.data)
            content_type = fetched.content_type or descriptor.content_type

            logger.info(
                "Uploading %s to %s:%s (%d bytes)",
                descriptor.filename,
                descriptor.destination.kind,
                descriptor.dest_path,
                content_length,
            )
            outcome = destination.put(descriptor.dest_path, fetched.data, content_type)
            if outcome.error:
                raise ItemTransferFailure(outcome.error)
            if not outcome.id:
                raise ItemTransferFailure("destination returned no object identifier")
        except Exception as exc:  # noqa: BLE001
            logger.error("Error copying %s: %s", descriptor.source_path, exc)
            return self._failure(descriptor, str(exc) or exc.__class__.__name__, content_length)

        return ItemTransferResult(
            filename=descriptor.filename,
            source_path=descriptor.source_path,
            dest_path=descriptor.dest_path,
            content_length=content_length,
            success=True,
        )
