"""
Archive builder.

Packs successful outputs into one ZIP container with a folder per category.
The total payload size is checked before any compression starts.
"""

import io
import json
import posixpath
import zipfile
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from . import codec
from .errors import SizeLimitExceeded
from .pipeline import PipelineResult
from ..utils.config import Config, create_environment_manifest
from ..utils.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"


@dataclass
class ArchiveEntry:
    """One file inside the archive; filenames are unique within a folder."""

    folder: str
    filename: str
    data: bytes = field(repr=False)

    @property
    def path(self) -> str:
        return posixpath.join(self.folder, self.filename) if self.folder else self.filename

    @property
    def size(self) -> int:
        return len(self.data)


def build_filename(original_name: str,
                   extension: str,
                   category_suffix: Optional[str] = None,
                   item_suffix: Optional[str] = None) -> str:
    """
    ``{base}{-category_suffix}{-item_suffix}.{extension}``

    Example:
        >>> build_filename("beach.png", "jpg", "square-post")
        'beach-square-post.jpg'
    """
    base = Path(original_name).stem or "image"
    parts = [base] + [suffix for suffix in (category_suffix, item_suffix) if suffix]
    return f"{'-'.join(parts)}.{extension.lstrip('.')}"


def unique_name(filename: str, taken: Set[str]) -> str:
    if filename not in taken:
        return filename

    stem, ext = posixpath.splitext(filename)
    counter = 1
    while f"{stem}-{counter}{ext}" in taken:
        counter += 1
    return f"{stem}-{counter}{ext}"


def default_archive_name(prefix: str = "processed-images", day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"{prefix}-{day.isoformat()}.zip"


class ArchiveBuilder:
    """
    Accumulates entries for a single archive.

    Entries are private to one builder; ``build`` hands their buffers to the
    ZIP writer and empties the builder.
    """

    def __init__(self, config: Optional[Config] = None, max_bytes: Optional[int] = None):
        """
        Args:
            config: Configuration (size ceiling, compression level, manifest)
            max_bytes: Override for ``config.max_archive_bytes``
        """
        self.config = config or Config()
        self.max_bytes = max_bytes if max_bytes is not None else self.config.max_archive_bytes
        self._entries: List[ArchiveEntry] = []
        self._names: Dict[str, Set[str]] = {}

    @property
    def entries(self) -> List[ArchiveEntry]:
        return list(self._entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self,
            folder: str,
            original_name: str,
            data: bytes,
            extension: Optional[str] = None,
            category_suffix: Optional[str] = None,
            item_suffix: Optional[str] = None) -> ArchiveEntry:
        """
        Add a buffer under ``folder``.

        A clashing filename gets ``-1``, ``-2``, ... appended in insertion
        order.
        """
        if extension is None:
            extension = Path(original_name).suffix.lstrip('.') or 'bin'

        folder = folder.strip('/')
        taken = self._names.setdefault(folder, set())
        filename = unique_name(build_filename(original_name, extension, category_suffix, item_suffix), taken)
        taken.add(filename)

        entry = ArchiveEntry(folder, filename, data)
        self._entries.append(entry)
        return entry

    def add_result(self,
                   result: PipelineResult,
                   original_name: str,
                   folder: str = "",
                   category_suffix: Optional[str] = None,
                   item_suffix: Optional[str] = None) -> Optional[ArchiveEntry]:
        """
        Take ownership of a successful result's buffer; failures are skipped.

        Raises:
            SizeLimitExceeded: If the buffer would push the archive over the
                ceiling; the result keeps its buffer
        """
        if result is None or not result.success or result.data is None:
            return None

        self.check_size(len(result.data))

        extension = codec.extension_for(result.format) if result.format else None
        return self.add(folder, original_name, result.take_data(), extension, category_suffix, item_suffix)

    def add_report(self, report) -> int:
        """
        Add every succeeded job of a batch report, one folder per preset category.

        Nothing is taken from the report when the outputs together would exceed
        the ceiling.

        Returns:
            Number of entries added

        Raises:
            SizeLimitExceeded: If the succeeded outputs do not fit
        """
        self.check_size(sum(len(job.result.data) for job in report.succeeded
                            if job.result is not None and job.result.data is not None))

        added = 0
        for job in report.succeeded:
            entry = self.add_result(job.result, job.asset.filename, folder=job.preset.category,
                                    category_suffix=job.preset.suffix)
            if entry is not None:
                added += 1
        return added

    def check_size(self, incoming: int = 0) -> None:
        """Raise SizeLimitExceeded if the entries plus ``incoming`` bytes exceed the ceiling."""
        total = self.total_size + incoming
        if total > self.max_bytes:
            raise SizeLimitExceeded(
                f"Total file size ({total / 1024 / 1024:.1f}MB) exceeds "
                f"{self.max_bytes / 1024 / 1024:.1f}MB limit")

    def build(self) -> bytes:
        """
        Compress every entry into one ZIP buffer.

        Raises:
            SizeLimitExceeded: If the summed entry size exceeds the ceiling
        """
        self.check_size()

        buffer = io.BytesIO()
        level = self.config.archive_compression_level
        with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED, compresslevel=level) as zf:
            for entry in self._entries:
                zf.writestr(entry.path, entry.data)
            if self.config.include_archive_manifest:
                zf.writestr(MANIFEST_NAME, json.dumps(self._manifest(), indent=2))

        count = len(self._entries)
        self._entries = []
        self._names = {}

        data = buffer.getvalue()
        logger.info(f"Built archive with {count} entries ({len(data) / 1024:.1f} KB)")
        return data

    def write(self, path: Union[str, Path]) -> Path:
        """Build the archive and save it to ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.build())
        return path

    def _manifest(self) -> Dict:
        manifest = create_environment_manifest(self.config)
        manifest['entries'] = [{'path': entry.path, 'size': entry.size} for entry in self._entries]
        return manifest
