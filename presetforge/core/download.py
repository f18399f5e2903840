"""
Download manager.

Hands processed buffers to a delivery target through short-lived references.
Every reference is released once its delivery finishes, whether it succeeded
or not.
"""

import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from .archive import ArchiveBuilder, build_filename, default_archive_name, unique_name
from . import codec
from .errors import DeliveryError
from ..utils.config import Config
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ReferenceRegistry:
    """Transient handles to in-memory buffers."""

    def __init__(self):
        self._buffers: Dict[str, bytes] = {}

    def create(self, data: bytes) -> str:
        reference = f"ref-{uuid.uuid4().hex}"
        self._buffers[reference] = data
        return reference

    def resolve(self, reference: str) -> bytes:
        try:
            return self._buffers[reference]
        except KeyError:
            raise KeyError(f"Reference {reference} is not active") from None

    def release(self, reference: str) -> bool:
        return self._buffers.pop(reference, None) is not None

    @property
    def active_count(self) -> int:
        return len(self._buffers)


class DeliveryTarget:
    """Where downloads end up."""

    def deliver(self, filename: str, reference: str, registry: ReferenceRegistry) -> None:
        raise NotImplementedError


class DirectoryDelivery(DeliveryTarget):
    """Writes each delivery into a directory."""

    def __init__(self, out_dir: Union[str, Path]):
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self.delivered: List[Path] = []

    def deliver(self, filename: str, reference: str, registry: ReferenceRegistry) -> None:
        path = self.out_dir / Path(filename).name
        path.write_bytes(registry.resolve(reference))
        self.delivered.append(path)
        logger.debug(f"Wrote {path}")


class CollectingDelivery(DeliveryTarget):
    """Keeps deliveries in memory, in arrival order."""

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.order: List[str] = []

    def deliver(self, filename: str, reference: str, registry: ReferenceRegistry) -> None:
        self.files[filename] = registry.resolve(reference)
        self.order.append(filename)


class DownloadManager:
    """
    Single, staggered multi-file, or archive delivery.

    ``sleep`` is injectable so the stagger interval can be observed without
    waiting.
    """

    def __init__(self,
                 target: DeliveryTarget,
                 config: Optional[Config] = None,
                 registry: Optional[ReferenceRegistry] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.target = target
        self.config = config or Config()
        self.registry = registry or ReferenceRegistry()
        self.sleep = sleep

    def download_single(self, filename: str, data: bytes) -> None:
        reference = self.registry.create(data)
        try:
            self.target.deliver(filename, reference, self.registry)
        finally:
            self.registry.release(reference)
        logger.info(f"Delivered {filename} ({len(data) / 1024:.1f} KB)")

    def download_multiple(self,
                          items: Sequence[Tuple[str, bytes]],
                          as_archive: bool = False,
                          archive_name: Optional[str] = None) -> List[str]:
        """
        Deliver several buffers.

        Args:
            items: ``(filename, data)`` pairs
            as_archive: Deliver one ZIP instead of individual files
            archive_name: Archive filename; date-stamped default if None

        Returns:
            Filenames delivered

        Raises:
            DeliveryError: If any individual delivery failed; the rest are
                still attempted
        """
        if as_archive:
            builder = ArchiveBuilder(self.config)
            for filename, data in items:
                builder.add("", filename, data)
            name = archive_name or default_archive_name()
            self.download_single(name, builder.build())
            return [name]

        delivered = []
        failures = []
        stagger = self.config.download_stagger_s
        for index, (filename, data) in enumerate(items):
            if index > 0 and stagger > 0:
                self.sleep(stagger)
            try:
                self.download_single(filename, data)
            except Exception as e:
                logger.error(f"Delivery of {filename} failed: {e}")
                failures.append(f"{filename}: {e}")
                continue
            delivered.append(filename)

        if failures:
            raise DeliveryError(f"{len(failures)} of {len(items)} deliveries failed: " + "; ".join(failures))
        return delivered

    def download_report(self,
                        report,
                        as_archive: bool = False,
                        archive_name: Optional[str] = None) -> List[str]:
        """
        Deliver every succeeded job of a batch report.

        Output buffers are taken from the job results, so a report can only be
        delivered once.
        """
        if as_archive:
            builder = ArchiveBuilder(self.config)
            builder.add_report(report)
            name = archive_name or default_archive_name()
            self.download_single(name, builder.build())
            return [name]

        items = []
        taken: Set[str] = set()
        for job in report.succeeded:
            if job.result.data is None:
                continue
            filename = unique_name(
                build_filename(job.asset.filename, codec.extension_for(job.result.format), job.preset.suffix),
                taken)
            taken.add(filename)
            items.append((filename, job.result.take_data()))
        return self.download_multiple(items)
