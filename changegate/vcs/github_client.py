"""GitHub access: installation tokens, repository handles and error mapping."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

import requests
from github import Auth, Github, GithubException, GithubIntegration
from github.GithubException import RateLimitExceededException, UnknownObjectException
from github.Repository import Repository

from changegate.core.errors import (
    ChangeGateError,
    ConflictError,
    NotFoundError,
    RemoteUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from changegate.models.domain import OrganizationRecord

_logger = logging.getLogger(__name__)

REMOTE_ERRORS = (GithubException, requests.RequestException)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _github_message(exc: GithubException) -> str:
    data = exc.data
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return str(exc)


def translate_github_error(exc: Exception, context: str) -> ChangeGateError:
    """Map a PyGithub or transport exception onto the service error taxonomy."""

    if isinstance(exc, RateLimitExceededException):
        return RemoteUnavailableError(f"{context}: rate limited by GitHub", code="RATE_LIMITED")
    if isinstance(exc, UnknownObjectException):
        return NotFoundError(f"{context}: not found")
    if isinstance(exc, GithubException):
        status = exc.status or 0
        message = _github_message(exc)
        if status == 404:
            return NotFoundError(f"{context}: {message}")
        if status == 409:
            return ConflictError(f"{context}: {message}")
        if status == 422:
            return ValidationError(f"{context}: {message}")
        if status == 403 and "rate limit" in message.lower():
            return RemoteUnavailableError(f"{context}: {message}", code="RATE_LIMITED")
        if status in (401, 403):
            return UnauthorizedError(f"{context}: {message}")
        if status == 429 or status >= 500:
            return RemoteUnavailableError(f"{context}: {message}")
        return RemoteUnavailableError(f"{context}: unexpected GitHub status {status}: {message}")
    if isinstance(exc, requests.RequestException):
        return RemoteUnavailableError(f"{context}: {exc.__class__.__name__}")
    return RemoteUnavailableError(f"{context}: {exc}")


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: Optional[datetime] = None


class TokenCache:
    """Per-key token cache with expiry-driven eviction.

    Concurrent misses for the same key are collapsed: one caller runs the
    loader while the others wait on the key's lock and reuse its result.
    """

    def __init__(
        self,
        *,
        refresh_margin_seconds: int = 60,
        default_ttl_seconds: int = 3300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._margin = timedelta(seconds=max(refresh_margin_seconds, 0))
        self._default_ttl = timedelta(seconds=default_ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CachedToken] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str, loader: Callable[[], CachedToken]) -> str:
        entry = self._fresh_entry(key)
        if entry is not None:
            return entry.token
        with self._lock_for(key):
            entry = self._fresh_entry(key)
            if entry is not None:
                return entry.token
            loaded = loader()
            if loaded.expires_at is None:
                loaded = CachedToken(loaded.token, self._clock() + self._default_ttl)
            with self._guard:
                self._entries[key] = loaded
            return loaded.token

    def invalidate(self, key: str) -> None:
        with self._guard:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def _fresh_entry(self, key: str) -> Optional[CachedToken]:
        self._evict_expired()
        with self._guard:
            return self._entries.get(key)

    def _evict_expired(self) -> None:
        cutoff = self._clock() + self._margin
        with self._guard:
            expired = [key for key, entry in self._entries.items() if entry.expires_at and entry.expires_at <= cutoff]
            for key in expired:
                del self._entries[key]

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class TokenProvider(Protocol):
    def token_for(self, organization: OrganizationRecord) -> str:  # pragma: no cover - interface
        ...


class StaticTokenProvider:
    """Uses one personal or fine-grained token for every organization."""

    def __init__(self, token: str) -> None:
        self._token = token

    def token_for(self, organization: OrganizationRecord) -> str:
        return self._token


class InstallationTokenProvider:
    """Exchanges the GitHub App's credentials for per-installation tokens."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        *,
        cache: TokenCache,
        base_url: str | None = None,
        timeout: int = 30,
        integration: GithubIntegration | None = None,
    ) -> None:
        if integration is None:
            auth = Auth.AppAuth(app_id, private_key)
            if base_url:
                integration = GithubIntegration(auth=auth, base_url=base_url.rstrip("/"), timeout=timeout)
            else:
                integration = GithubIntegration(auth=auth, timeout=timeout)
        self._integration = integration
        self._cache = cache

    def token_for(self, organization: OrganizationRecord) -> str:
        installation_id = organization.github_installation_id
        if not installation_id:
            raise NotFoundError(
                f"Organization {organization.organization_id} has no GitHub installation",
                code="INSTALLATION_NOT_FOUND",
            )
        return self._cache.get(installation_id, lambda: self._exchange(installation_id))

    def _exchange(self, installation_id: str) -> CachedToken:
        try:
            authorization = self._integration.get_access_token(int(installation_id))
        except REMOTE_ERRORS as exc:
            raise translate_github_error(exc, f"installation token for {installation_id}") from exc
        _logger.info("Minted installation token for installation %s", installation_id)
        expires_at = authorization.expires_at
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return CachedToken(authorization.token, expires_at)


class GitHubRepositoryFactory:
    """Builds authenticated PyGithub repository handles per organization."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        base_url: str | None = None,
        timeout: int = 30,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout

    def repository(self, organization: OrganizationRecord, full_name: str) -> Repository:
        token = self._token_provider.token_for(organization)
        kwargs = {"auth": Auth.Token(token), "timeout": self._timeout, "retry": None}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        client = Github(**kwargs)
        try:
            return client.get_repo(full_name)
        except REMOTE_ERRORS as exc:
            raise translate_github_error(exc, f"repository {full_name}") from exc


def load_private_key(inline_key: str | None, key_path: str | None) -> str | None:
    """Read the App private key from a file or an env value with escaped newlines."""

    if key_path:
        return Path(key_path).read_text(encoding="utf-8")
    if inline_key:
        return inline_key.replace("\\n", "\n")
    return None
