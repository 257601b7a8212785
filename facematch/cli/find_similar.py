#!/usr/bin/env python
"""
Find a person's faces in a local photo library.

Registers the person from a photo on first use, then searches the library
and lists the images in which their face was found.

Usage:
    python -m facematch.cli.find_similar --name "Ada" --photo ada.jpg --library ~/Pictures
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from facematch.core.config import settings
from facematch.core.container import ServiceContainer
from facematch.core.exceptions import FaceMatchingError
from facematch.core.logging import get_logger, setup_logging
from facematch.infrastructure.database.session import create_session_factory
from facematch.infrastructure.storage.local import LocalDirectoryImageSource

logger = get_logger(__name__)


async def find_similar(
    name: str,
    photo: Optional[str],
    library: str,
    database_url: str,
    wait: bool = True,
) -> int:
    """Register (if needed) and search for a person.

    Args:
        name: Person name; an existing person with that name is reused
        photo: Primary photo used when the person is new
        library: Photo library directory
        database_url: Record store URL
        wait: Wait for background processing past the search ceiling

    Returns:
        Process exit code
    """
    services = ServiceContainer(
        image_source=LocalDirectoryImageSource(library),
        session_factory=create_session_factory(database_url),
    )
    await services.initialize()
    try:
        review = services.face_review_service
        person = await review.find_person(name)
        if person is None:
            if not photo:
                logger.error("Unknown person; pass --photo to register them", name=name)
                return 1
            photo_bytes = Path(photo).read_bytes()
            person = await review.create_person(name, primary_photo=photo_bytes)
            print(f"Registered {name} ({person.id})")

        with tqdm(desc=f"Searching for {name}", unit="img") as progress:
            def on_progress(processed: int, planned: int) -> None:
                progress.total = planned
                progress.n = processed
                progress.refresh()

            matched = await services.match_orchestrator.start_search(person.id, progress_callback=on_progress)

            if wait and services.match_orchestrator.continuations:
                progress.set_description(f"Searching for {name} (remaining images)")
                await services.match_orchestrator.shutdown(cancel=False)

        faces = await review.faces_for_person(person.id)
        print(f"Matched {matched} new face(s); {len(faces)} face(s) attributed to {name}:")
        for face in faces:
            status = "verified" if face.is_verified else "suggested"
            print(f"  {face.image_id}  [{status}, quality {face.quality_score:.2f}]")
        return 0

    except FaceMatchingError as e:
        logger.error("Search failed", error=str(e), details=e.details)
        return 1
    finally:
        await services.cleanup()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Find a person's faces in a photo library")
    parser.add_argument("--name", required=True, help="Person to search for")
    parser.add_argument("--photo", help="Primary photo of the person (required for a new person)")
    parser.add_argument("--library", default=settings.PHOTO_LIBRARY_DIR, help="Photo library directory")
    parser.add_argument("--database", default=settings.DATABASE_URL, help="Record store URL")
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return after the initial search ceiling instead of processing the whole library"
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(find_similar(args.name, args.photo, args.library, args.database, not args.no_wait)))


if __name__ == "__main__":
    main()
