"""Application dependency wiring."""

from __future__ import annotations

from functools import lru_cache

from redis import Redis

from changegate.core.config import settings
from changegate.notifications import NotificationDispatcher, channels_from_settings
from changegate.repositories.redis_store import ChangeStore
from changegate.services.lifecycle import LifecycleOrchestrator
from changegate.services.pipelines import PipelineGate
from changegate.services.reviews import ReviewService
from changegate.snapshots import DirectorySnapshotSource
from changegate.telemetry import EventSink, sink_from_settings
from changegate.vcs.github_client import (
    GitHubRepositoryFactory,
    InstallationTokenProvider,
    StaticTokenProvider,
    TokenCache,
    load_private_key,
)
from changegate.vcs.staging import StagingManagerFactory


@lru_cache
def get_redis_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True)


@lru_cache
def get_store() -> ChangeStore:
    return ChangeStore(get_redis_client())


@lru_cache
def get_event_sink() -> EventSink:
    return sink_from_settings()


@lru_cache
def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher(
        channels_from_settings(),
        workers=settings.notification_workers,
        queue_size=settings.notification_queue_size,
    )


@lru_cache
def get_token_cache() -> TokenCache:
    return TokenCache(refresh_margin_seconds=settings.token_refresh_margin_seconds)


@lru_cache
def get_repository_factory() -> GitHubRepositoryFactory | None:
    private_key = load_private_key(settings.github_app_private_key, settings.github_app_private_key_path)
    if settings.github_app_id and private_key:
        provider = InstallationTokenProvider(
            settings.github_app_id,
            private_key,
            cache=get_token_cache(),
            base_url=settings.github_base_url,
            timeout=settings.github_timeout_seconds,
        )
    elif settings.github_token:
        provider = StaticTokenProvider(settings.github_token)
    else:
        return None
    return GitHubRepositoryFactory(
        provider,
        base_url=settings.github_base_url,
        timeout=settings.github_timeout_seconds,
    )


@lru_cache
def get_staging_managers() -> StagingManagerFactory | None:
    repositories = get_repository_factory()
    if repositories is None:
        return None
    return StagingManagerFactory(
        repositories.repository,
        prefix=settings.staging_branch_prefix,
        max_length=settings.staging_branch_max_length,
        blob_batch_size=settings.blob_batch_size,
        blob_batch_delay_seconds=settings.blob_batch_delay_seconds,
        write_retries=settings.remote_write_retries,
        write_backoff_seconds=settings.remote_write_backoff_seconds,
        ref_read_attempts=settings.ref_read_retries,
        ref_read_backoff_seconds=settings.ref_read_backoff_seconds,
    )


@lru_cache
def get_pipeline_gate() -> PipelineGate:
    repositories = get_repository_factory()
    return PipelineGate(
        get_store(),
        get_notifier(),
        webhook_secret=settings.cicd_webhook_secret,
        repositories=repositories.repository if repositories else None,
        default_workflow=settings.default_validation_workflow,
        sink=get_event_sink(),
    )


@lru_cache
def get_review_service() -> ReviewService:
    return ReviewService(get_store(), get_pipeline_gate(), get_notifier(), sink=get_event_sink())


@lru_cache
def get_lifecycle() -> LifecycleOrchestrator:
    snapshot_source = DirectorySnapshotSource(settings.snapshot_root) if settings.snapshot_root else None
    return LifecycleOrchestrator(
        get_store(),
        get_review_service(),
        get_pipeline_gate(),
        get_notifier(),
        managers=get_staging_managers(),
        snapshot_source=snapshot_source,
        sink=get_event_sink(),
    )
