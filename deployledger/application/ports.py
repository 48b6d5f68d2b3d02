from typing import Any, Dict, List, Optional, Protocol

from deployledger.domain.models import (
    DeploymentRecord,
    Identity,
    RecordPage,
    RepositorySummary,
    SortOrder,
)


class DeploymentRecordStore(Protocol):
    """Append-only log of deployment records keyed by (owner, repository_name)."""

    async def find_latest(self, identity: Identity) -> Optional[DeploymentRecord]: ...

    async def find_all(self, identity: Identity, newest_first: bool = True) -> List[DeploymentRecord]: ...

    async def find_by_owner(
        self, owner: str, limit: int, offset: int, sort_order: SortOrder
    ) -> RecordPage: ...

    async def append(self, record: DeploymentRecord) -> DeploymentRecord: ...

    async def aggregate_by_owner(self, owner: str) -> List[RepositorySummary]: ...

    async def get_by_id(self, record_id: str) -> Optional[DeploymentRecord]: ...


class PayloadStore(Protocol):
    """Content-addressed payload storage referenced by content hash only."""

    async def store(self, payload: Dict[str, Any]) -> str: ...

    async def fetch(self, content_hash: str) -> Dict[str, Any]: ...

    async def pin(self, content_hash: str) -> bool: ...

    async def close(self) -> None: ...
