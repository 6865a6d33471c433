"""Main entry point for dreamflow."""

import asyncio
from datetime import timedelta
from typing import Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from dreamflow.config import get_settings, require_secret
from dreamflow.dropbox.auth import DropboxAuth
from dreamflow.dropbox.sync import ChangeSync
from dreamflow.dropbox.vault import CredentialVault
from dreamflow.logging import get_logger, setup_logging
from dreamflow.pipeline.context import ContextSelector
from dreamflow.pipeline.embeddings import get_embeddings_client
from dreamflow.pipeline.generation import get_analysis_generator
from dreamflow.pipeline.motifs import MotifTracker
from dreamflow.pipeline.processor import ProcessingPipeline, TaskTrigger
from dreamflow.pipeline.transcription import get_transcriber
from dreamflow.records.blobs import LocalBlobStore
from dreamflow.records.intake import RecordIntake
from dreamflow.records.storage import RecordStorage
from dreamflow.webhook.handler import WebhookProcessor
from dreamflow.webhook.server import DreamflowServer

log = get_logger("dreamflow.main")


async def close_clients(*clients: Any) -> None:
    """Close provider clients, continuing past any that fail to close."""
    for client in clients:
        if client is None:
            continue
        try:
            await client.close()
        except Exception as e:
            log.warning("client_close_failed", client=type(client).__name__, error=str(e))


async def main() -> None:
    """Main application entry point."""
    setup_logging()

    settings = get_settings()
    log.info(
        "starting_dreamflow",
        environment=settings.environment,
        dropbox_configured=settings.dropbox_configured,
        analysis_provider=settings.analysis_provider,
        embeddings_backend=settings.embeddings_backend,
    )

    # Fail fast on configuration before touching the database
    app_key = require_secret(settings.dropbox_app_key, "DROPBOX_APP_KEY")
    app_secret = require_secret(settings.dropbox_app_secret, "DROPBOX_APP_SECRET")
    transcriber = get_transcriber(settings)
    generator = get_analysis_generator(settings)
    embeddings = get_embeddings_client(settings)

    pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=10)
    log.info("database_pool_created")

    vault = CredentialVault(
        DropboxAuth(
            app_key,
            app_secret,
            settings.dropbox_redirect_uri,
            timeout=settings.provider_timeout_seconds,
        )
    )
    sync = ChangeSync(
        watch_path=settings.dropbox_watch_path,
        recursive=settings.dropbox_recursive,
        extensions=tuple(settings.audio_extensions),
        timeout=settings.provider_timeout_seconds,
    )
    records = RecordStorage()
    motifs = MotifTracker()
    for component in (vault, sync, records, motifs):
        await component.initialize(pool)

    blobs = LocalBlobStore(settings.blob_dir)
    pipeline = ProcessingPipeline(
        records,
        blobs,
        transcriber,
        generator,
        ContextSelector(records, motifs),
        motifs,
        embeddings,
        max_attempts=settings.max_processing_attempts,
        timeout=settings.service_timeout_seconds,
        sweep_grace=timedelta(minutes=settings.sweep_grace_minutes),
    )
    trigger = TaskTrigger(pipeline, timeout=settings.trigger_timeout_seconds)
    intake = RecordIntake(
        records,
        blobs,
        trigger,
        timeout=settings.provider_timeout_seconds,
    )

    server = DreamflowServer(
        webhook=WebhookProcessor(
            vault, sync, intake, max_users=settings.max_users_per_invocation
        ),
        vault=vault,
        pipeline=pipeline,
        records=records,
        motifs=motifs,
        trigger=trigger,
        app_key=app_key,
        app_secret=app_secret,
        api_secret=(
            settings.api_secret.get_secret_value() if settings.api_secret else None
        ),
        host=settings.host,
        port=settings.port,
        sweep_interval=settings.sweep_interval_seconds,
    )

    try:
        await server.start()
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("shutdown_requested")
    finally:
        await server.stop()
        await close_clients(transcriber, generator, embeddings)
        await pool.close()
        log.info("dreamflow_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
