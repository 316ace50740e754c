"""Python client stubs for interacting with the change governance API."""

from .client import ChangegateClient, PipelineReportRequest, SyncRequest, sign_body
from .async_client import AsyncChangegateClient

__all__ = ["ChangegateClient", "PipelineReportRequest", "SyncRequest", "sign_body", "AsyncChangegateClient"]
