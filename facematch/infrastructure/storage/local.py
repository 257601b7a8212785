"""Photo library backed by a local directory tree."""
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import cv2
import numpy as np

from facematch.core.config import settings
from facematch.core.logging import get_logger
from facematch.core.utils.image import fit_within, read_exif
from facematch.domain.entities.face import ImageRef
from facematch.domain.interfaces.storage.image_source import ImageSource
from facematch.domain.value_objects.image import CorpusFilter, LoadedImage
from facematch.infrastructure.database.models import as_utc

logger = get_logger(__name__)

DEFAULT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff")


class LocalDirectoryImageSource(ImageSource):
    """
    Image source enumerating the image files below a directory.

    Image ids are paths relative to the root, with forward slashes. The
    creation date is the EXIF capture date when present, otherwise the file
    modification time.

    Example:
        ```python
        source = LocalDirectoryImageSource("~/Pictures")
        refs = await source.fetch_corpus()
        image = await source.load(refs[0], (1920, 1920), timeout=10)
        ```
    """

    def __init__(self, root: Optional[str] = None, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> None:
        """Initialize the source.

        Args:
            root: Library directory (defaults to ``settings.PHOTO_LIBRARY_DIR``)
            extensions: File extensions treated as images
        """
        self.root = Path(root or settings.PHOTO_LIBRARY_DIR).expanduser()
        self.extensions = {ext.lower() for ext in extensions}

    def path_for(self, image_id: str) -> Path:
        """Absolute path of an image id; rejects ids escaping the root."""
        path = (self.root / image_id).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Image id outside of library: {image_id}")
        return path

    def _file_date(self, path: Path) -> Optional[datetime]:
        _, captured = read_exif(path)
        if captured is not None:
            return captured
        try:
            return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return None

    def _scan(self, corpus_filter: Optional[CorpusFilter]) -> List[ImageRef]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Photo library not found: {self.root}")

        created_after = as_utc(corpus_filter.created_after) if corpus_filter else None
        created_before = as_utc(corpus_filter.created_before) if corpus_filter else None
        refs: List[ImageRef] = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in self.extensions:
                continue
            created_at = self._file_date(path)
            if corpus_filter is not None and created_at is not None:
                if created_after and created_at < created_after:
                    continue
                if created_before and created_at >= created_before:
                    continue
            refs.append(ImageRef(image_id=path.relative_to(self.root).as_posix(), created_at=created_at))
            if corpus_filter is not None and corpus_filter.limit and len(refs) >= corpus_filter.limit:
                break
        return refs

    async def fetch_corpus(self, corpus_filter: Optional[CorpusFilter] = None) -> List[ImageRef]:
        """Enumerate image files below the root directory."""
        refs = await asyncio.to_thread(self._scan, corpus_filter)
        logger.info("Scanned photo library", root=str(self.root), images=len(refs))
        return refs

    def _decode(self, image_id: str, target_size: Optional[Tuple[int, int]]) -> Optional[LoadedImage]:
        path = self.path_for(image_id)
        data = path.read_bytes()
        # Keep the stored pixels; orientation is applied by the extractor
        pixels = cv2.imdecode(
            np.frombuffer(data, np.uint8),
            cv2.IMREAD_COLOR | cv2.IMREAD_IGNORE_ORIENTATION,
        )
        if pixels is None:
            logger.warning("Could not decode image file", image_id=image_id)
            return None

        if target_size is not None:
            height, width = pixels.shape[:2]
            new_size = fit_within((width, height), max(target_size))
            if new_size != (width, height):
                pixels = cv2.resize(pixels, new_size, interpolation=cv2.INTER_AREA)

        orientation, _ = read_exif(data)
        return LoadedImage(pixels=pixels, orientation=orientation, degraded=False)

    async def deliveries(
        self,
        ref: ImageRef,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> AsyncIterator[LoadedImage]:
        """Yield the decoded file once; nothing when it cannot be read."""
        try:
            loaded = await asyncio.to_thread(self._decode, ref.image_id, target_size)
        except (OSError, ValueError) as e:
            logger.warning("Could not read image file", image_id=ref.image_id, error=str(e))
            return
        if loaded is not None:
            yield loaded

    async def creation_date(self, ref: ImageRef) -> Optional[datetime]:
        if ref.created_at is not None:
            return ref.created_at
        try:
            path = self.path_for(ref.image_id)
        except ValueError:
            return None
        return await asyncio.to_thread(self._file_date, path)
