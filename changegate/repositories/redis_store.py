"""Redis-backed persistence layer for changes, reviews and pipeline runs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from redis import Redis
from redis.exceptions import WatchError

from changegate.core.errors import ConflictError
from changegate.models.domain import (
    ChangeRecord,
    ChangeStatus,
    MemberRecord,
    OrganizationRecord,
    PipelineRun,
    ReviewRecord,
    ReviewStatus,
)

_MAX_TRANSACTION_ATTEMPTS = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(dt: datetime) -> float:
    return dt.timestamp()


class ChangeStore:
    """Stores organizations, changes, reviews and pipeline runs in Redis."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    # organizations ---------------------------------------------------------

    def upsert_organization(self, organization: OrganizationRecord) -> None:
        self._client.set(self._organization_key(organization.organization_id), organization.model_dump_json())

    def get_organization(self, organization_id: str) -> Optional[OrganizationRecord]:
        data = self._client.get(self._organization_key(organization_id))
        if not data:
            return None
        return OrganizationRecord.model_validate_json(data)

    def upsert_member(self, member: MemberRecord) -> None:
        self._client.hset(self._members_key(member.organization_id), member.user_id, member.model_dump_json())

    def list_members(self, organization_id: str) -> list[MemberRecord]:
        values = self._client.hvals(self._members_key(organization_id))
        members = [MemberRecord.model_validate_json(value) for value in values]
        return sorted(members, key=lambda member: member.user_id)

    def get_member(self, organization_id: str, user_id: str) -> Optional[MemberRecord]:
        data = self._client.hget(self._members_key(organization_id), user_id)
        if not data:
            return None
        return MemberRecord.model_validate_json(data)

    # changes ---------------------------------------------------------------

    def create_change(self, record: ChangeRecord) -> None:
        self._client.set(self._change_key(record.change_id), record.model_dump_json())
        self._client.zadd(
            self._organization_changes_key(record.organization_id),
            {record.change_id: _timestamp(record.created_at)},
        )

    def get_change(self, change_id: str) -> Optional[ChangeRecord]:
        data = self._client.get(self._change_key(change_id))
        if not data:
            return None
        return ChangeRecord.model_validate_json(data)

    def list_changes(self, organization_id: str) -> list[ChangeRecord]:
        ids = self._client.zrange(self._organization_changes_key(organization_id), 0, -1)
        if not ids:
            return []
        pipeline = self._client.pipeline()
        for change_id in ids:
            pipeline.get(self._change_key(change_id))
        return [ChangeRecord.model_validate_json(blob) for blob in pipeline.execute() if blob]

    def update_change(self, change_id: str, **fields: Any) -> Optional[ChangeRecord]:
        """Apply field updates without a status precondition."""

        return self._compare_and_set(
            self._change_key(change_id),
            ChangeRecord,
            lambda record: True,
            fields,
        )

    def transition_change(
        self,
        change_id: str,
        expected: Iterable[ChangeStatus],
        target: ChangeStatus,
        **fields: Any,
    ) -> Optional[ChangeRecord]:
        """Move a change to ``target`` only if its current status is in ``expected``.

        Returns the updated record, or ``None`` when the change was absent or in
        another status. Exactly one of any set of concurrent callers racing on
        the same transition receives the record.
        """

        allowed = set(expected)
        return self._compare_and_set(
            self._change_key(change_id),
            ChangeRecord,
            lambda record: record.status in allowed,
            {**fields, "status": target},
        )

    # reviews ---------------------------------------------------------------

    def create_review(self, review: ReviewRecord) -> bool:
        """Persist a review; returns False if the reviewer already holds one for this round."""

        slot = f"{review.review_round}:{review.reviewer_id}"
        if not self._client.hsetnx(self._change_reviewers_key(review.change_id), slot, review.review_id):
            return False
        self._client.set(self._review_key(review.review_id), review.model_dump_json())
        self._client.sadd(self._change_reviews_key(review.change_id), review.review_id)
        return True

    def get_review(self, review_id: str) -> Optional[ReviewRecord]:
        data = self._client.get(self._review_key(review_id))
        if not data:
            return None
        return ReviewRecord.model_validate_json(data)

    def list_reviews(self, change_id: str, review_round: int | None = None) -> list[ReviewRecord]:
        ids = self._client.smembers(self._change_reviews_key(change_id))
        if not ids:
            return []
        pipeline = self._client.pipeline()
        for review_id in ids:
            pipeline.get(self._review_key(review_id))
        reviews = [ReviewRecord.model_validate_json(blob) for blob in pipeline.execute() if blob]
        if review_round is not None:
            reviews = [review for review in reviews if review.review_round == review_round]
        return sorted(reviews, key=lambda review: (review.review_round, review.created_at, review.reviewer_id))

    def transition_review(
        self,
        review_id: str,
        expected: Iterable[ReviewStatus],
        target: ReviewStatus,
        **fields: Any,
    ) -> Optional[ReviewRecord]:
        allowed = set(expected)
        return self._compare_and_set(
            self._review_key(review_id),
            ReviewRecord,
            lambda record: record.status in allowed,
            {**fields, "status": target},
        )

    # pipeline runs ---------------------------------------------------------

    def get_pipeline_run(self, change_id: str) -> Optional[PipelineRun]:
        data = self._client.get(self._pipeline_key(change_id))
        if not data:
            return None
        return PipelineRun.model_validate_json(data)

    def save_pipeline_run(self, run: PipelineRun) -> None:
        self._client.set(self._pipeline_key(run.change_id), run.model_dump_json())

    # merge lock ------------------------------------------------------------

    def acquire_merge_lock(self, change_id: str, ttl_seconds: int = 300) -> bool:
        return bool(self._client.set(self._merge_lock_key(change_id), "1", nx=True, ex=ttl_seconds))

    def release_merge_lock(self, change_id: str) -> None:
        self._client.delete(self._merge_lock_key(change_id))

    # helpers ---------------------------------------------------------------

    def _compare_and_set(
        self,
        key: str,
        model: type,
        predicate: Callable[[Any], bool],
        updates: dict[str, Any],
    ):
        with self._client.pipeline() as pipe:
            for _ in range(_MAX_TRANSACTION_ATTEMPTS):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw:
                        pipe.unwatch()
                        return None
                    record = model.model_validate_json(raw)
                    if not predicate(record):
                        pipe.unwatch()
                        return None
                    updated = record.model_copy(update={**updates, "updated_at": _now()})
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    pipe.execute()
                    return updated
                except WatchError:
                    continue
        raise ConflictError(f"Concurrent updates kept invalidating {key}")

    @staticmethod
    def _organization_key(organization_id: str) -> str:
        return f"org:{organization_id}"

    @staticmethod
    def _members_key(organization_id: str) -> str:
        return f"org:{organization_id}:members"

    @staticmethod
    def _organization_changes_key(organization_id: str) -> str:
        return f"org:{organization_id}:changes"

    @staticmethod
    def _change_key(change_id: str) -> str:
        return f"change:{change_id}"

    @staticmethod
    def _change_reviews_key(change_id: str) -> str:
        return f"change:{change_id}:reviews"

    @staticmethod
    def _change_reviewers_key(change_id: str) -> str:
        return f"change:{change_id}:reviewers"

    @staticmethod
    def _review_key(review_id: str) -> str:
        return f"review:{review_id}"

    @staticmethod
    def _pipeline_key(change_id: str) -> str:
        return f"change:{change_id}:pipeline"

    @staticmethod
    def _merge_lock_key(change_id: str) -> str:
        return f"change:{change_id}:merge-lock"
