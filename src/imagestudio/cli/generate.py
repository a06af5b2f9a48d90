"""CLI command for running one generation batch from the terminal.

Usage:
    python -m imagestudio.cli.generate --prompt TEXT [OPTIONS]

Examples:
    # Generate three images
    python -m imagestudio.cli.generate --prompt "a lighthouse at dusk" --count 3

    # Guide generation with reference images and save results elsewhere
    python -m imagestudio.cli.generate --prompt "same cat, watercolor" \\
        --reference cat1.png --reference cat2.jpg --output ./out

    # Verbose logging
    python -m imagestudio.cli.generate --prompt "..." -v

The API key is read from --api-key or the GOOGLE_API_KEY environment variable.
"""

import asyncio
import mimetypes
import os
import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path

import structlog

from imagestudio.core.config import Settings, configure_logging
from imagestudio.models.slot import SlotStatus
from imagestudio.services.exceptions import InvalidInputError
from imagestudio.services.files import ReferenceFile, format_file_size, sanitize_filename
from imagestudio.services.generation.executor import GenerationExecutor
from imagestudio.services.generation.gemini_client import GeminiImageClient
from imagestudio.services.storage.backends import create_blob_backends
from imagestudio.services.storage.client import BlobStoreClient
from imagestudio.workers.generation_orchestrator import (
    BatchGenerationRequest,
    GenerationOrchestrator,
)

logger = structlog.get_logger()

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Generate a batch of images from a text prompt",
        epilog="One independent request is sent per image; failures do not affect siblings",
    )

    parser.add_argument("--prompt", required=True, help="Text prompt for every image")

    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of images to generate (default: 1)",
    )

    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_API_KEY", ""),
        help="Google API key (default: $GOOGLE_API_KEY)",
    )

    parser.add_argument(
        "--reference",
        action="append",
        default=[],
        metavar="PATH",
        help="Reference image file (repeatable)",
    )

    parser.add_argument(
        "--output",
        default=".",
        metavar="DIR",
        help="Directory for generated images (default: current directory)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def load_reference(path: Path) -> ReferenceFile:
    """Read a reference image from disk, guessing its content type from the extension."""
    content_type, _ = mimetypes.guess_type(path.name)
    return ReferenceFile(
        name=path.name,
        content_type=content_type or "application/octet-stream",
        data=path.read_bytes(),
    )


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (all images generated), 1 (none / invalid input), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    try:
        references = [load_reference(Path(p)) for p in args.reference]
    except OSError as e:
        print(f"Error: cannot read reference image: {e}", file=sys.stderr)
        return EXIT_FAILURE

    blob_backend, _ = create_blob_backends(settings)
    blob_client = BlobStoreClient(blob_backend)
    gemini = GeminiImageClient(
        base_url=settings.gemini_api_base_url,
        model=settings.gemini_model,
        timeout=settings.generation_timeout_seconds,
    )
    orchestrator = GenerationOrchestrator(
        GenerationExecutor(gemini, blob_client, settings), settings
    )

    try:
        batch_id = orchestrator.start_batch_generation(
            BatchGenerationRequest(
                prompt=args.prompt,
                image_count=args.count,
                api_key=args.api_key,
                reference_images=[ref.serialize() for ref in references],
            )
        )
    except InvalidInputError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(f"Batch {batch_id}: generating {args.count} image(s)...")

    try:
        await orchestrator.wait_idle()
    except asyncio.CancelledError:
        await orchestrator.shutdown()
        raise

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    succeeded = 0
    for slot in orchestrator.slots:
        if slot.status != SlotStatus.COMPLETED or slot.image is None:
            print(f"  [{slot.image_index}] error: {slot.error}")
            continue

        fetched = await blob_client.get_object(slot.image.storage_key)
        if not fetched.success or fetched.data is None:
            print(f"  [{slot.image_index}] error: could not read stored image: {fetched.error}")
            continue

        target = output_dir / sanitize_filename(slot.image.filename)
        target.write_bytes(fetched.data)
        succeeded += 1
        print(
            f"  [{slot.image_index}] saved {target} "
            f"({format_file_size(len(fetched.data))}, {slot.image.storage_key})"
        )

    total = len(orchestrator.slots)
    logger.info("cli.batch_finished", batch_id=batch_id, succeeded=succeeded, total=total)

    if succeeded == total:
        return EXIT_SUCCESS
    if succeeded == 0:
        return EXIT_FAILURE
    return EXIT_PARTIAL


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (sync wrapper)."""
    try:
        return asyncio.run(async_main(argv))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
