import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from deployledger.application.payload_strategy import PayloadStrategy, PreparedPayload
from deployledger.application.ports import DeploymentRecordStore
from deployledger.domain.change_detector import annotate_changes, has_changed
from deployledger.domain.exceptions import (
    DeploymentException,
    NoOpRejectionException,
    NotFoundException,
    StorageUnavailableException,
    ValidationException,
    VersionConflictException,
)
from deployledger.domain.models import (
    AnnotatedRecord,
    DeploymentRecord,
    DeploymentResult,
    Identity,
    OwnerDeployments,
    Pagination,
    RepositoryHistory,
    RepositorySummary,
    SortOrder,
    canonical_owner,
)
from deployledger.domain.versioning import next_version

logger = logging.getLogger(__name__)

DEFAULT_IO_TIMEOUT = 30.0  # Seconds allowed for any single store or payload-store call
DEFAULT_MAX_CONFLICT_ATTEMPTS = 3
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentService:
    """
    Assigns semantic versions to submitted contract payloads and records them.

    The service holds no state between requests: the record store's history is the
    only source of truth for versions. A submission is accepted only when its payload
    differs from the latest deployed one for the same (owner, repository_name).
    """

    def __init__(
            self,
            record_store: DeploymentRecordStore,
            payload_strategy: PayloadStrategy,
            io_timeout: float = DEFAULT_IO_TIMEOUT,
            max_conflict_attempts: int = DEFAULT_MAX_CONFLICT_ATTEMPTS,
            clock: Callable[[], datetime] = _utcnow,
    ):
        if max_conflict_attempts < 1:
            raise ValueError("max_conflict_attempts must be at least 1.")
        self.record_store = record_store
        self.payload_strategy = payload_strategy
        self.io_timeout = io_timeout
        self.max_conflict_attempts = max_conflict_attempts
        self.clock = clock

    async def _bounded(self, operation: Awaitable[T], description: str) -> T:
        """Awaits a store operation, turning timeout expiry into StorageUnavailableException."""
        try:
            return await asyncio.wait_for(operation, timeout=self.io_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out after {self.io_timeout}s while trying to {description}.")
            raise StorageUnavailableException(f"Timed out while trying to {description}.") from e

    async def deploy(self, owner: Any, repository_name: Any, payload: Any) -> DeploymentResult:
        """
        Runs the write flow: validate, fetch latest, detect change, version, persist.

        Raises:
            ValidationException: Malformed identity or payload.
            NoOpRejectionException: Payload equals the latest deployed payload.
            StorageUnavailableException: A store could not be reached in time.
            VersionConflictException: Concurrent writers kept taking the computed version.
            PersistenceException: The record store rejected the write.
        """
        identity = Identity.parse(owner, repository_name)
        if not isinstance(payload, dict):
            raise ValidationException({"payload": "Contract code must be a valid JSON object"})

        prepared = None
        attempt = 1
        while True:
            latest = await self._bounded(self.record_store.find_latest(identity), "fetch the latest deployment")

            # Stored once; a conflict retry compares the same fingerprint against the new latest.
            if prepared is None:
                prepared = await self._bounded(self.payload_strategy.prepare(payload), "store the payload")
                await self._retain(prepared)

            if not has_changed(latest.fingerprint if latest else None, prepared.fingerprint):
                logger.info(f"Rejected deployment for {identity.owner}/{identity.repository_name}: no changes.")
                raise NoOpRejectionException()

            version = next_version(latest.version if latest else None)
            deployed_at = self.clock()
            if latest is not None and deployed_at < latest.deployed_at:
                deployed_at = latest.deployed_at

            record = DeploymentRecord(
                owner=identity.owner,
                repository_name=identity.repository_name,
                version=version,
                payload=prepared.payload,
                content_hash=prepared.content_hash,
                deployed_at=deployed_at,
            )

            try:
                stored = await self._bounded(self.record_store.append(record), "persist the deployment")
            except VersionConflictException:
                if attempt >= self.max_conflict_attempts:
                    logger.error(
                        f"Giving up on {identity.owner}/{identity.repository_name} after "
                        f"{attempt} version conflicts."
                    )
                    raise
                logger.warning(
                    f"Version {version} of {identity.owner}/{identity.repository_name} was taken "
                    f"concurrently. Retrying ({attempt}/{self.max_conflict_attempts})..."
                )
                attempt += 1
                continue

            logger.info(f"Deployed {identity.owner}/{identity.repository_name} as version {stored.version}.")
            return DeploymentResult(record=stored, changed=True, first_deployment=latest is None)

    async def _retain(self, prepared: PreparedPayload) -> None:
        """Best-effort retention (pinning) of a stored payload; never aborts the deployment."""
        try:
            await asyncio.wait_for(self.payload_strategy.retain(prepared), timeout=self.io_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Retaining payload {prepared.fingerprint} took longer than {self.io_timeout}s; "
                f"continuing with the deployment."
            )
        except DeploymentException as e:
            logger.warning(f"Retaining payload {prepared.fingerprint} failed: {e}; continuing with the deployment.")

    async def list_by_owner(
            self,
            owner: Any,
            limit: int = DEFAULT_PAGE_LIMIT,
            offset: int = 0,
            sort_order: Any = SortOrder.DESC,
            annotate: bool = False,
    ) -> OwnerDeployments:
        """Pages through every deployment of a wallet, with per-repository summaries."""
        owner = canonical_owner(owner)
        limit, offset = self._check_pagination(limit, offset)
        try:
            sort_order = SortOrder(sort_order)
        except ValueError as e:
            raise ValidationException({"sort": "Sort order must be 'asc' or 'desc'"}) from e

        page, summaries = await asyncio.gather(
            self._bounded(self.record_store.find_by_owner(owner, limit, offset, sort_order), "list deployments"),
            self._bounded(self.record_store.aggregate_by_owner(owner), "summarize deployments"),
        )

        changes: Dict[Optional[str], bool] = {}
        if annotate:
            # A record's predecessor may sit on another page, so walk each repository's full history.
            for repository_name in dict.fromkeys(r.repository_name for r in page.records):
                identity = Identity(owner=owner, repository_name=repository_name)
                history = await self._bounded(
                    self.record_store.find_all(identity, newest_first=False), "load repository history"
                )
                changes.update((record.id, changed) for record, changed in annotate_changes(history))

        records = [
            AnnotatedRecord(record=record, changed=changes.get(record.id) if annotate else None)
            for record in page.records
        ]

        return OwnerDeployments(
            owner=owner,
            records=records,
            pagination=Pagination(
                total=page.total,
                limit=limit,
                offset=offset,
                has_more=offset + len(records) < page.total,
            ),
            repositories=summaries,
        )

    async def list_by_repository(
            self,
            owner: Any,
            repository_name: Any,
            limit: Optional[int] = None,
            offset: int = 0,
            include_payload: bool = False,
    ) -> RepositoryHistory:
        """
        Returns a repository's history newest first, each record annotated with whether
        it changed relative to its predecessor.

        Raises:
            NotFoundException: The repository has no deployments.
        """
        identity = Identity.parse(owner, repository_name)
        if limit is not None:
            limit, offset = self._check_pagination(limit, offset)
        elif offset < 0:
            raise ValidationException({"offset": "Offset cannot be negative"})

        history = await self._bounded(
            self.record_store.find_all(identity, newest_first=False), "load repository history"
        )
        if not history:
            raise NotFoundException(
                f"No deployments found for {identity.owner}/{identity.repository_name}."
            )

        newest_first = list(reversed(annotate_changes(history)))
        end = None if limit is None else offset + limit
        window = newest_first[offset:end]

        records = []
        for record, changed in window:
            if not include_payload:
                records.append(AnnotatedRecord(record=record, changed=changed))
                continue
            records.append(await self._with_payload(record, changed))

        return RepositoryHistory(identity=identity, records=records, total=len(history))

    async def _with_payload(self, record: DeploymentRecord, changed: bool) -> AnnotatedRecord:
        try:
            payload = await self._bounded(self.payload_strategy.resolve(record), "fetch the payload")
        except DeploymentException as e:
            logger.warning(f"Failed to retrieve payload for deployment {record.id}: {e}")
            return AnnotatedRecord(record=record, changed=changed, payload_error="Failed to retrieve payload")
        return AnnotatedRecord(record=record, changed=changed, payload=payload)

    async def get_deployment(self, record_id: str) -> DeploymentRecord:
        record = await self._bounded(self.record_store.get_by_id(record_id), "fetch the deployment")
        if record is None:
            raise NotFoundException(f"Deployment {record_id} not found.")
        return record

    async def owner_stats(self, owner: Any) -> List[RepositorySummary]:
        owner = canonical_owner(owner)
        return await self._bounded(self.record_store.aggregate_by_owner(owner), "summarize deployments")

    async def fetch_payload(self, content_hash: str) -> Dict[str, Any]:
        if not isinstance(content_hash, str) or not content_hash.strip():
            raise ValidationException({"contentHash": "Content hash is required"})
        return await self._bounded(self.payload_strategy.fetch(content_hash.strip()), "fetch the payload")

    @staticmethod
    def _check_pagination(limit: int, offset: int):
        errors = {}
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            errors["limit"] = f"Limit must be between 1 and {MAX_PAGE_LIMIT}"
        if offset < 0:
            errors["offset"] = "Offset cannot be negative"
        if errors:
            raise ValidationException(errors)
        return limit, offset

