import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from deployledger.application.ports import PayloadStore
from deployledger.domain.exceptions import NotFoundException
from deployledger.domain.models import DeploymentRecord, Fingerprint, PayloadStrategyKind

logger = logging.getLogger(__name__)


class PreparedPayload(BaseModel):
    """What a record stores for a payload: the payload itself or its content hash."""
    model_config = ConfigDict(frozen=True)

    payload: Optional[Dict[str, Any]] = None
    content_hash: Optional[str] = None

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        if self.content_hash is not None:
            return self.content_hash
        return self.payload


class PayloadStrategy(Protocol):
    kind: PayloadStrategyKind

    async def prepare(self, payload: Dict[str, Any]) -> PreparedPayload: ...

    async def retain(self, prepared: PreparedPayload) -> bool: ...

    async def resolve(self, record: DeploymentRecord) -> Dict[str, Any]: ...

    async def fetch(self, content_hash: str) -> Dict[str, Any]: ...


class EmbeddedPayloadStrategy:
    """Keeps the payload inside the deployment record."""

    kind = PayloadStrategyKind.EMBEDDED

    async def prepare(self, payload: Dict[str, Any]) -> PreparedPayload:
        return PreparedPayload(payload=payload)

    async def retain(self, prepared: PreparedPayload) -> bool:
        return True

    async def resolve(self, record: DeploymentRecord) -> Dict[str, Any]:
        if record.payload is None:
            raise NotFoundException(f"Deployment {record.id} has no embedded payload.")
        return record.payload

    async def fetch(self, content_hash: str) -> Dict[str, Any]:
        raise NotFoundException("Payloads are embedded in records; there is no content-addressed storage.")


class ContentAddressedPayloadStrategy:
    """
    Stores the payload in a PayloadStore and keeps only its content hash in the record.
    Pinning happens in retain(), separately from prepare(), and is best-effort: the
    payload is already stored when it is attempted.
    """

    kind = PayloadStrategyKind.CONTENT_ADDRESSED

    def __init__(self, payload_store: PayloadStore):
        self.payload_store = payload_store

    async def prepare(self, payload: Dict[str, Any]) -> PreparedPayload:
        content_hash = await self.payload_store.store(payload)
        return PreparedPayload(content_hash=content_hash)

    async def retain(self, prepared: PreparedPayload) -> bool:
        if await self.payload_store.pin(prepared.content_hash):
            return True
        logger.warning(f"Could not pin payload {prepared.content_hash}; continuing with the deployment.")
        return False

    async def resolve(self, record: DeploymentRecord) -> Dict[str, Any]:
        if record.content_hash is None:
            raise NotFoundException(f"Deployment {record.id} has no content hash.")
        return await self.payload_store.fetch(record.content_hash)

    async def fetch(self, content_hash: str) -> Dict[str, Any]:
        return await self.payload_store.fetch(content_hash)
