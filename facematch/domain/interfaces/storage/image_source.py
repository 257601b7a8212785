"""Photo source interface."""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

from facematch.core.logging import get_logger

from ...entities.face import ImageRef
from ...value_objects.image import CorpusFilter, LoadedImage

logger = get_logger(__name__)


class ImageSource(ABC):
    """Interface for enumerating and loading photos from a library."""

    @abstractmethod
    async def fetch_corpus(self, corpus_filter: Optional[CorpusFilter] = None) -> List[ImageRef]:
        """
        Enumerate the images available for a search.

        Args:
            corpus_filter: Optional restriction on creation date / count

        Returns:
            Image references, in no particular order
        """
        pass

    @abstractmethod
    def deliveries(
        self,
        ref: ImageRef,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> AsyncIterator[LoadedImage]:
        """
        Deliver the pixels of an image.

        A source may yield a fast degraded preview before the final image.
        The iterator ends after the final (non-degraded) delivery, or without
        yielding anything when the image cannot be loaded.

        Args:
            ref: Image to load
            target_size: Optional ``(width, height)`` bound for the delivered pixels
        """
        pass

    async def creation_date(self, ref: ImageRef) -> Optional[datetime]:
        """Creation date of an image, if the source knows it."""
        return ref.created_at

    async def load(
        self,
        ref: ImageRef,
        target_size: Optional[Tuple[int, int]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[LoadedImage]:
        """
        Wait for the final delivery of an image.

        Degraded previews are skipped. If ``timeout`` elapses first, the most
        recent degraded delivery is accepted instead of blocking further.

        Returns:
            The loaded image, or None when nothing was delivered
        """
        latest: Optional[LoadedImage] = None

        async def consume() -> Optional[LoadedImage]:
            nonlocal latest
            async for delivery in self.deliveries(ref, target_size):
                latest = delivery
                if not delivery.degraded:
                    return delivery
            return latest

        try:
            return await asyncio.wait_for(consume(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for final image delivery",
                image_id=ref.image_id,
                timeout=timeout,
                accepted_degraded=latest is not None,
            )
            return latest
