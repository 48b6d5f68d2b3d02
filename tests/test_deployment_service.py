import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from deployledger.application.deployment_service import DeploymentService
from deployledger.application.payload_strategy import (
    ContentAddressedPayloadStrategy,
    EmbeddedPayloadStrategy,
)
from deployledger.domain.exceptions import (
    NoOpRejectionException,
    NotFoundException,
    PersistenceException,
    StorageUnavailableException,
    ValidationException,
    VersionConflictException,
)
from deployledger.domain.models import DeploymentRecord, SortOrder
from deployledger.domain.versioning import compare_versions
from fakes import InMemoryDeploymentStore, InMemoryPayloadStore

OWNER = "0x" + "AbCdEf0123" * 4
CANONICAL_OWNER = OWNER.lower()
PAYLOAD_A = {"abi": [{"type": "function", "name": "mint"}], "bytecode": "0x6000"}
PAYLOAD_B = {"abi": [{"type": "function", "name": "burn"}], "bytecode": "0x6001"}


class _Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


def _service(store=None, strategy=None, **kwargs) -> DeploymentService:
    return DeploymentService(
        record_store=store or InMemoryDeploymentStore(),
        payload_strategy=strategy or EmbeddedPayloadStrategy(),
        clock=kwargs.pop("clock", _Clock(datetime(2024, 1, 1, tzinfo=timezone.utc))),
        **kwargs,
    )


class TestDeployEmbedded(unittest.IsolatedAsyncioTestCase):
    async def test_first_deployment_gets_baseline_version(self) -> None:
        store = InMemoryDeploymentStore()
        service = _service(store)

        result = await service.deploy(OWNER, "  token  ", PAYLOAD_A)

        self.assertEqual(result.record.version, "0.1.0")
        self.assertTrue(result.changed)
        self.assertTrue(result.first_deployment)
        self.assertEqual(result.record.owner, CANONICAL_OWNER)
        self.assertEqual(result.record.repository_name, "token")
        self.assertEqual(result.record.payload, PAYLOAD_A)
        self.assertIsNone(result.record.content_hash)
        self.assertIsNotNone(result.record.id)

    async def test_same_payload_twice_is_rejected(self) -> None:
        store = InMemoryDeploymentStore()
        service = _service(store)

        await service.deploy(OWNER, "token", PAYLOAD_A)
        with self.assertRaises(NoOpRejectionException) as ctx:
            await service.deploy(OWNER, "token", dict(reversed(list(PAYLOAD_A.items()))))

        self.assertEqual(str(ctx.exception), "nothing to commit, everything is up to date")
        self.assertEqual(len(store.records), 1)

    async def test_a_b_a_creates_three_versions(self) -> None:
        store = InMemoryDeploymentStore()
        service = _service(store)

        versions = []
        for payload in (PAYLOAD_A, PAYLOAD_B, PAYLOAD_A):
            result = await service.deploy(OWNER, "token", payload)
            versions.append(result.record.version)

        self.assertEqual(versions, ["0.1.0", "0.1.1", "0.1.2"])
        self.assertEqual(len(store.records), 3)

    async def test_versions_strictly_increase_for_distinct_payloads(self) -> None:
        service = _service()

        versions = []
        for i in range(12):
            result = await service.deploy(OWNER, "token", {"bytecode": hex(i)})
            versions.append(result.record.version)

        for older, newer in zip(versions, versions[1:]):
            self.assertEqual(compare_versions(older, newer), -1)
        self.assertEqual(versions[-1], "0.1.11")

    async def test_identities_are_versioned_independently(self) -> None:
        service = _service()

        await service.deploy(OWNER, "token", PAYLOAD_A)
        await service.deploy(OWNER, "token", PAYLOAD_B)
        other = await service.deploy(OWNER, "vault", PAYLOAD_A)

        self.assertEqual(other.record.version, "0.1.0")

    async def test_owner_case_does_not_split_history(self) -> None:
        service = _service()

        await service.deploy(OWNER.lower(), "token", PAYLOAD_A)
        with self.assertRaises(NoOpRejectionException):
            await service.deploy(OWNER.upper().replace("0X", "0x"), "token", PAYLOAD_A)

    async def test_deployed_at_never_goes_backwards(self) -> None:
        store = InMemoryDeploymentStore()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        service = _service(store, clock=_Clock(start, step=timedelta(seconds=-5)))

        first = await service.deploy(OWNER, "token", PAYLOAD_A)
        second = await service.deploy(OWNER, "token", PAYLOAD_B)

        self.assertEqual(second.record.deployed_at, first.record.deployed_at)
        self.assertEqual((await store.find_latest(second.record.identity)).version, "0.1.1")


class TestDeployValidation(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_identity_reports_each_field(self) -> None:
        store = InMemoryDeploymentStore()
        service = _service(store)

        with self.assertRaises(ValidationException) as ctx:
            await service.deploy("0x123", "   ", PAYLOAD_A)

        self.assertEqual(set(ctx.exception.errors), {"owner", "repository_name"})
        self.assertEqual(ctx.exception.errors["owner"], "Invalid wallet address format")
        self.assertEqual(store.append_calls, 0)

    async def test_repository_name_length_is_bounded(self) -> None:
        service = _service()

        with self.assertRaises(ValidationException) as ctx:
            await service.deploy(OWNER, "x" * 101, PAYLOAD_A)
        self.assertIn("repository_name", ctx.exception.errors)

        result = await service.deploy(OWNER, "x" * 100, PAYLOAD_A)
        self.assertEqual(result.record.version, "0.1.0")

    async def test_payload_must_be_an_object(self) -> None:
        service = _service()

        for payload in (None, "code", [1, 2]):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationException) as ctx:
                    await service.deploy(OWNER, "token", payload)
                self.assertIn("payload", ctx.exception.errors)

    async def test_validation_happens_before_payload_storage(self) -> None:
        payload_store = InMemoryPayloadStore()
        service = _service(strategy=ContentAddressedPayloadStrategy(payload_store))

        with self.assertRaises(ValidationException):
            await service.deploy("not-a-wallet", "token", PAYLOAD_A)

        self.assertEqual(payload_store.blobs, {})


class _SlowPinPayloadStore(InMemoryPayloadStore):
    async def pin(self, content_hash: str) -> bool:
        await asyncio.sleep(1)
        return await super().pin(content_hash)


class _ErroringPinPayloadStore(InMemoryPayloadStore):
    async def pin(self, content_hash: str) -> bool:
        raise StorageUnavailableException("pinning service is down")


class TestDeployContentAddressed(unittest.IsolatedAsyncioTestCase):
    async def test_records_hold_content_hash_only(self) -> None:
        payload_store = InMemoryPayloadStore()
        service = _service(strategy=ContentAddressedPayloadStrategy(payload_store))

        result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertIsNone(result.record.payload)
        self.assertIn(result.record.content_hash, payload_store.blobs)
        self.assertEqual(payload_store.pinned, [result.record.content_hash])

    async def test_same_content_hash_is_rejected(self) -> None:
        store = InMemoryDeploymentStore()
        service = _service(store, ContentAddressedPayloadStrategy(InMemoryPayloadStore()))

        await service.deploy(OWNER, "token", PAYLOAD_A)
        with self.assertRaises(NoOpRejectionException):
            await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(len(store.records), 1)

    async def test_pin_failure_does_not_abort(self) -> None:
        payload_store = InMemoryPayloadStore(pin_succeeds=False)
        service = _service(strategy=ContentAddressedPayloadStrategy(payload_store))

        with self.assertLogs("deployledger.application.payload_strategy", level="WARNING"):
            result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(result.record.version, "0.1.0")

    async def test_slow_pin_does_not_abort(self) -> None:
        store = InMemoryDeploymentStore()
        payload_store = _SlowPinPayloadStore()
        service = _service(store, ContentAddressedPayloadStrategy(payload_store), io_timeout=0.05)

        with self.assertLogs("deployledger.application.deployment_service", level="WARNING"):
            result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(result.record.version, "0.1.0")
        self.assertEqual(len(store.records), 1)
        self.assertIn(result.record.content_hash, payload_store.blobs)

    async def test_pin_error_does_not_abort(self) -> None:
        store = InMemoryDeploymentStore()
        payload_store = _ErroringPinPayloadStore()
        service = _service(store, ContentAddressedPayloadStrategy(payload_store))

        with self.assertLogs("deployledger.application.deployment_service", level="WARNING"):
            result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(result.record.version, "0.1.0")

    async def test_payload_store_outage_creates_nothing(self) -> None:
        store = InMemoryDeploymentStore()
        payload_store = InMemoryPayloadStore()
        payload_store.unavailable = True
        service = _service(store, ContentAddressedPayloadStrategy(payload_store))

        with self.assertRaises(StorageUnavailableException):
            await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(store.records, [])

    async def test_fetch_payload_by_hash(self) -> None:
        payload_store = InMemoryPayloadStore()
        service = _service(strategy=ContentAddressedPayloadStrategy(payload_store))
        result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(await service.fetch_payload(result.record.content_hash), PAYLOAD_A)
        with self.assertRaises(NotFoundException):
            await service.fetch_payload("QmUnknown")

    async def test_fetch_payload_in_embedded_mode_is_not_found(self) -> None:
        with self.assertRaises(NotFoundException):
            await _service().fetch_payload("QmAnything")


class _RacingStore(InMemoryDeploymentStore):
    """Lets a competing writer take the computed version right before our append."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races

    async def append(self, record: DeploymentRecord) -> DeploymentRecord:
        if self.races > 0:
            self.races -= 1
            await super().append(record.model_copy(update={"payload": {"competing": self.races}}))
        return await super().append(record)


class _FailingStore(InMemoryDeploymentStore):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    async def append(self, record: DeploymentRecord) -> DeploymentRecord:
        raise self.error


class _SlowStore(InMemoryDeploymentStore):
    async def find_latest(self, identity):
        await asyncio.sleep(1)
        return None


class TestDeployFailures(unittest.IsolatedAsyncioTestCase):
    async def test_conflict_retries_from_fetching(self) -> None:
        store = _RacingStore(races=1)
        service = _service(store)

        result = await service.deploy(OWNER, "token", PAYLOAD_A)

        self.assertEqual(result.record.version, "0.1.1")
        versions = [r.version for r in store.records]
        self.assertEqual(versions, ["0.1.0", "0.1.1"])

    async def test_conflict_gives_up_after_max_attempts(self) -> None:
        store = _RacingStore(races=5)
        service = _service(store, max_conflict_attempts=2)

        with self.assertRaises(VersionConflictException) as ctx:
            await service.deploy(OWNER, "token", PAYLOAD_A)

        # The conflict reports the version taken on the final attempt.
        self.assertEqual(ctx.exception.version, "0.1.1")
        # Only the competing writer's records exist; versions stay unique.
        versions = [r.version for r in store.records]
        self.assertEqual(len(versions), len(set(versions)))

    async def test_persistence_error_propagates(self) -> None:
        service = _service(_FailingStore(PersistenceException("write rejected")))

        with self.assertRaises(PersistenceException):
            await service.deploy(OWNER, "token", PAYLOAD_A)

    async def test_timeout_surfaces_as_storage_unavailable(self) -> None:
        service = _service(_SlowStore(), io_timeout=0.01)

        with self.assertRaises(StorageUnavailableException):
            await service.deploy(OWNER, "token", PAYLOAD_A)

    def test_rejects_non_positive_conflict_attempts(self) -> None:
        with self.assertRaises(ValueError):
            _service(max_conflict_attempts=0)


class TestQueries(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryDeploymentStore()
        self.payload_store = InMemoryPayloadStore()
        self.service = _service(self.store, ContentAddressedPayloadStrategy(self.payload_store))
        for repo, payload in [
            ("token", PAYLOAD_A),
            ("vault", PAYLOAD_A),
            ("token", PAYLOAD_B),
            ("token", PAYLOAD_A),
        ]:
            await self.service.deploy(OWNER, repo, payload)

    async def test_repository_history_is_newest_first_and_annotated(self) -> None:
        history = await self.service.list_by_repository(OWNER, "token")

        self.assertEqual(history.total, 3)
        self.assertEqual([r.record.version for r in history.records], ["0.1.2", "0.1.1", "0.1.0"])
        self.assertTrue(all(r.changed for r in history.records))
        self.assertIsNone(history.records[0].payload)

    async def test_repository_history_includes_payloads(self) -> None:
        history = await self.service.list_by_repository(OWNER, "token", include_payload=True)

        self.assertEqual(history.records[0].payload, PAYLOAD_A)
        self.assertEqual(history.records[1].payload, PAYLOAD_B)

    async def test_missing_payload_degrades_to_error_marker(self) -> None:
        self.payload_store.blobs.clear()

        with self.assertLogs("deployledger.application.deployment_service", level="WARNING"):
            history = await self.service.list_by_repository(OWNER, "token", include_payload=True)

        self.assertTrue(all(r.payload_error for r in history.records))

    async def test_repository_history_pagination(self) -> None:
        history = await self.service.list_by_repository(OWNER, "token", limit=1, offset=1)

        self.assertEqual([r.record.version for r in history.records], ["0.1.1"])
        self.assertEqual(history.total, 3)

    async def test_empty_repository_is_not_found(self) -> None:
        with self.assertRaises(NotFoundException):
            await self.service.list_by_repository(OWNER, "nothing-here")

    async def test_owner_listing_paginates(self) -> None:
        result = await self.service.list_by_owner(OWNER, limit=2, offset=0)

        self.assertEqual(result.owner, CANONICAL_OWNER)
        self.assertEqual(len(result.records), 2)
        self.assertEqual(result.pagination.total, 4)
        self.assertTrue(result.pagination.has_more)
        self.assertEqual(result.records[0].record.version, "0.1.2")
        self.assertIsNone(result.records[0].changed)

        last_page = await self.service.list_by_owner(OWNER, limit=2, offset=2, sort_order=SortOrder.DESC)
        self.assertFalse(last_page.pagination.has_more)

    async def test_owner_listing_ascending(self) -> None:
        result = await self.service.list_by_owner(OWNER, sort_order="asc")

        self.assertEqual(
            [(r.record.repository_name, r.record.version) for r in result.records],
            [("token", "0.1.0"), ("vault", "0.1.0"), ("token", "0.1.1"), ("token", "0.1.2")],
        )

    async def test_owner_listing_annotates_against_full_history(self) -> None:
        # The predecessor of the newest record is not on this page.
        result = await self.service.list_by_owner(OWNER, limit=1, annotate=True)

        self.assertEqual(result.records[0].record.version, "0.1.2")
        self.assertTrue(result.records[0].changed)

    async def test_owner_listing_includes_repository_summaries(self) -> None:
        result = await self.service.list_by_owner(OWNER)

        summaries = {s.repository_name: s for s in result.repositories}
        self.assertEqual(summaries["token"].total_deployments, 3)
        self.assertEqual(summaries["token"].latest_version, "0.1.2")
        self.assertEqual(summaries["vault"].latest_version, "0.1.0")

    async def test_owner_listing_validates_arguments(self) -> None:
        for kwargs, field in [
            ({"limit": 0}, "limit"),
            ({"limit": 101}, "limit"),
            ({"offset": -1}, "offset"),
            ({"sort_order": "sideways"}, "sort"),
        ]:
            with self.subTest(**kwargs):
                with self.assertRaises(ValidationException) as ctx:
                    await self.service.list_by_owner(OWNER, **kwargs)
                self.assertIn(field, ctx.exception.errors)

    async def test_owner_without_deployments_lists_nothing(self) -> None:
        result = await self.service.list_by_owner("0x" + "0" * 40)

        self.assertEqual(result.records, [])
        self.assertEqual(result.pagination.total, 0)
        self.assertFalse(result.pagination.has_more)

    async def test_owner_stats(self) -> None:
        summaries = await self.service.owner_stats(OWNER)

        self.assertEqual(summaries[0].repository_name, "token")
        self.assertEqual(summaries[0].version_stats.total, 3)
        self.assertEqual(summaries[0].version_stats.oldest, "0.1.0")

    async def test_get_deployment(self) -> None:
        record = await self.service.get_deployment("2")
        self.assertEqual(record.repository_name, "vault")

        with self.assertRaises(NotFoundException):
            await self.service.get_deployment("999")
