import logging
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.dialects.postgresql import JSONB, aggregate_order_by, insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from deployledger.domain.exceptions import (
    PersistenceException,
    StorageUnavailableException,
    VersionConflictException,
)
from deployledger.domain.models import (
    DeploymentRecord,
    Identity,
    RecordPage,
    RepositorySummary,
    SortOrder,
)
from deployledger.domain.versioning import version_stats
from deployledger.infrastructure.acl import DeploymentTranslator

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definition
metadata = MetaData()
deployments_table = Table(
    'deployments', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=True),
    Column('owner', String(42), nullable=False),
    Column('repository_name', String(100), nullable=False),
    Column('version', String, nullable=False),
    Column('payload', JSONB, nullable=True),
    Column('content_hash', String, nullable=True),
    Column('deployed_at', DateTime(timezone=True), nullable=False),
    # Two writers computing the same next version: the second insert fails here.
    UniqueConstraint('owner', 'repository_name', 'version', name='uq_deployments_identity_version'),
    Index('ix_deployments_owner', 'owner'),
    Index('ix_deployments_identity', 'owner', 'repository_name'),
    Index('ix_deployments_deployed_at', 'deployed_at'),
)


class PostgresDeploymentRepository:
    """
    Append-only store of deployment records in PostgreSQL.
    Records of an identity are ordered by deployed_at, ties broken by insertion id.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _identity_filter(identity: Identity):
        return (
            (deployments_table.c.owner == identity.owner)
            & (deployments_table.c.repository_name == identity.repository_name)
        )

    @staticmethod
    def _chronological(newest_first: bool):
        if newest_first:
            return deployments_table.c.deployed_at.desc(), deployments_table.c.id.desc()
        return deployments_table.c.deployed_at.asc(), deployments_table.c.id.asc()

    async def _fetch_all(self, stmt) -> list:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                return list(result.mappings().all())
        except (OperationalError, OSError) as e:
            logger.error(f"Database unavailable: {e}")
            raise StorageUnavailableException("Database is unavailable.") from e
        except SQLAlchemyError as e:
            logger.error(f"Database query failed: {e}")
            raise PersistenceException("Database query failed.") from e

    async def find_latest(self, identity: Identity) -> Optional[DeploymentRecord]:
        stmt = (
            select(deployments_table)
            .where(self._identity_filter(identity))
            .order_by(*self._chronological(newest_first=True))
            .limit(1)
        )
        rows = await self._fetch_all(stmt)
        return DeploymentTranslator.to_domain(rows[0]) if rows else None

    async def find_all(self, identity: Identity, newest_first: bool = True) -> List[DeploymentRecord]:
        stmt = (
            select(deployments_table)
            .where(self._identity_filter(identity))
            .order_by(*self._chronological(newest_first))
        )
        return [DeploymentTranslator.to_domain(row) for row in await self._fetch_all(stmt)]

    async def find_by_owner(
        self, owner: str, limit: int, offset: int, sort_order: SortOrder
    ) -> RecordPage:
        count_stmt = (
            select(func.count().label('total'))
            .select_from(deployments_table)
            .where(deployments_table.c.owner == owner)
        )
        page_stmt = (
            select(deployments_table)
            .where(deployments_table.c.owner == owner)
            .order_by(*self._chronological(newest_first=sort_order is SortOrder.DESC))
            .limit(limit)
            .offset(offset)
        )
        total_rows = await self._fetch_all(count_stmt)
        rows = await self._fetch_all(page_stmt)
        return RecordPage(
            records=[DeploymentTranslator.to_domain(row) for row in rows],
            total=total_rows[0]['total'] if total_rows else 0,
        )

    async def get_by_id(self, record_id: str) -> Optional[DeploymentRecord]:
        try:
            key = int(record_id)
        except (TypeError, ValueError):
            return None
        stmt = select(deployments_table).where(deployments_table.c.id == key)
        rows = await self._fetch_all(stmt)
        return DeploymentTranslator.to_domain(rows[0]) if rows else None

    async def aggregate_by_owner(self, owner: str) -> List[RepositorySummary]:
        """Per-repository totals, newest version first in the aggregated version list."""
        versions = func.array_agg(
            aggregate_order_by(
                deployments_table.c.version,
                deployments_table.c.deployed_at.desc(),
                deployments_table.c.id.desc(),
            )
        )
        stmt = (
            select(
                deployments_table.c.repository_name,
                func.count().label('total_deployments'),
                versions.label('versions'),
                func.min(deployments_table.c.deployed_at).label('first_deployed'),
                func.max(deployments_table.c.deployed_at).label('last_deployed'),
            )
            .where(deployments_table.c.owner == owner)
            .group_by(deployments_table.c.repository_name)
            .order_by(func.max(deployments_table.c.deployed_at).desc())
        )
        return [
            RepositorySummary(
                repository_name=row['repository_name'],
                total_deployments=row['total_deployments'],
                latest_version=row['versions'][0] if row['versions'] else None,
                first_deployed=row['first_deployed'],
                last_deployed=row['last_deployed'],
                version_stats=version_stats(row['versions'] or []),
            )
            for row in await self._fetch_all(stmt)
        ]

    async def append(self, record: DeploymentRecord) -> DeploymentRecord:
        """
        Inserts a new record and returns it with its assigned identifier.

        Raises:
            VersionConflictException: The (owner, repository_name, version) already exists.
            StorageUnavailableException: The database could not be reached.
            PersistenceException: Any other write failure.
        """
        stmt = insert(deployments_table).values(
            DeploymentTranslator.to_row(record)
        ).returning(deployments_table.c.id)

        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                new_id = result.scalar_one()
        except IntegrityError as e:
            raise VersionConflictException(record.owner, record.repository_name, record.version) from e
        except (OperationalError, OSError) as e:
            logger.error(f"Database unavailable while appending: {e}")
            raise StorageUnavailableException("Database is unavailable.") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to append deployment: {e}")
            raise PersistenceException("Failed to persist deployment.") from e

        return record.model_copy(update={'id': str(new_id)})
