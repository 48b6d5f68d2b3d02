from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from deployledger.domain.models import DeploymentRecord


class DeploymentTranslator:
    """
    Anti-corruption layer that translates between database rows and DeploymentRecord instances.
    """

    @staticmethod
    def to_domain(row: Mapping[str, Any]) -> DeploymentRecord:
        """
        Transforms a row of the deployments table into a DeploymentRecord.

        Args:
            row (Mapping[str, Any]): A result mapping with the deployments table columns.

        Returns:
            DeploymentRecord: The immutable domain record.
        """
        deployed_at = row.get('deployed_at')
        if deployed_at is None:
            raise ValueError("deployed_at is required to build DeploymentRecord.")
        if isinstance(deployed_at, str):
            deployed_at = datetime.fromisoformat(deployed_at.replace("Z", "+00:00"))
        if deployed_at.tzinfo is None:
            deployed_at = deployed_at.replace(tzinfo=timezone.utc)

        row_id = row.get('id')

        return DeploymentRecord(
            id=str(row_id) if row_id is not None else None,
            owner=row['owner'],
            repository_name=row['repository_name'],
            version=row['version'],
            payload=row.get('payload'),
            content_hash=row.get('content_hash'),
            deployed_at=deployed_at,
        )

    @staticmethod
    def to_row(record: DeploymentRecord) -> Dict[str, Any]:
        """Column values for inserting a record; the id is left to the database."""
        return {
            'owner': record.owner,
            'repository_name': record.repository_name,
            'version': record.version,
            'payload': record.payload,
            'content_hash': record.content_hash,
            'deployed_at': record.deployed_at,
        }
