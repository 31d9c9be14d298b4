"""CLI commands for face detection."""

import asyncio
import json
import time
from pathlib import Path

import typer
from tqdm import tqdm


faces_app = typer.Typer(name="faces", help="Face detection commands")


@faces_app.command("detect")
def detect(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Image file to analyse"),
) -> None:
    """Run the configured face detector on one image and print the result as JSON.

    Example:
        faces detect ./holiday.jpg
    """
    from tracelens_service.core.config import get_settings
    from tracelens_service.faces.detector import create_face_detector
    from tracelens_service.faces.exceptions import DetectionError

    settings = get_settings()
    detector = create_face_detector(settings)

    started = time.perf_counter()
    try:
        raw = asyncio.run(detector.detect(path))
    except DetectionError as e:
        typer.secho(f"Detection failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    elapsed_ms = int(round((time.perf_counter() - started) * 1000))

    result = raw.finalize(
        processing_time_ms=elapsed_ms,
        fallback_width=settings.default_image_width,
        fallback_height=settings.default_image_height,
    )
    typer.echo(json.dumps(result.to_dict(), indent=2))


@faces_app.command("process-pending")
def process_pending(
    owner_id: int = typer.Option(..., "--owner-id", help="Owner whose images to process"),
    limit: int | None = typer.Option(None, help="Process at most this many images"),
) -> None:
    """Run face detection over an owner's unprocessed images.

    Images are sent through the batch orchestrator in batches of
    DETECTION_MAX_BATCH_SIZE; failed items stay unprocessed.

    Example:
        faces process-pending --owner-id 1 --limit 100
    """
    from tracelens_service.core.config import get_settings
    from tracelens_service.db.image_store import ImageRecordStore
    from tracelens_service.db.session import close_db, get_session_factory
    from tracelens_service.faces.detector import create_face_detector
    from tracelens_service.services.detection_service import BatchDetectionOrchestrator
    from tracelens_service.storage import create_file_storage

    settings = get_settings()
    detector = create_face_detector(settings)
    storage = create_file_storage(settings)

    async def _process() -> tuple[int, int]:
        succeeded = failed = 0
        try:
            async with get_session_factory()() as session:
                store = ImageRecordStore(session)
                orchestrator = BatchDetectionOrchestrator.from_settings(
                    settings, store, storage, detector
                )
                image_ids = await store.list_unprocessed_ids(owner_id, limit=limit)
                typer.echo(f"Processing {len(image_ids)} images...")

                batch_size = settings.detection_max_batch_size
                with tqdm(total=len(image_ids), desc="Face detection", unit="img") as pbar:
                    for start in range(0, len(image_ids), batch_size):
                        batch = await orchestrator.run_batch(
                            owner_id, image_ids[start : start + batch_size]
                        )
                        succeeded += batch.succeeded
                        failed += batch.failed
                        for outcome in batch.outcomes:
                            if not outcome.succeeded and outcome.error_code is not None:
                                typer.echo(
                                    f"Image {outcome.image_id}: "
                                    f"{outcome.error_code.value} ({outcome.error_message})"
                                )
                        pbar.update(len(batch.outcomes))
        finally:
            await close_db()
        return succeeded, failed

    succeeded, failed = asyncio.run(_process())
    typer.echo(f"Done: {succeeded} processed, {failed} failed")
    if failed:
        raise typer.Exit(1)
