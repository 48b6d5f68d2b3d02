from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from deployledger.domain.models import (
    AnnotatedRecord,
    DeploymentRecord,
    Pagination,
    RepositorySummary,
    VersionStats,
)


class DeployRequest(BaseModel):
    # Identity and payload checks happen in the service so every caller gets the same messages.
    model_config = ConfigDict(populate_by_name=True)

    owner: Any = None
    repository_name: Any = Field(None, alias="repositoryName")
    payload: Any = None


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def record_to_json(record: DeploymentRecord, changed: Optional[bool] = None) -> Dict[str, Any]:
    data = {
        "id": record.id,
        "owner": record.owner,
        "repositoryName": record.repository_name,
        "version": record.version,
        "deployedAt": _timestamp(record.deployed_at),
        "contentHash": record.content_hash,
    }
    if changed is not None:
        data["changed"] = changed
    return data


def annotated_to_json(item: AnnotatedRecord, include_payload: bool = False) -> Dict[str, Any]:
    data = record_to_json(item.record, item.changed)
    if include_payload:
        if item.payload_error:
            data["payloadError"] = item.payload_error
        else:
            data["payload"] = item.payload
    return data


def stats_to_json(stats: VersionStats) -> Dict[str, Any]:
    return {
        "total": stats.total,
        "latest": stats.latest,
        "oldest": stats.oldest,
        "distinctMajor": stats.distinct_major,
        "distinctMinorCombinations": stats.distinct_minor_combinations,
    }


def summary_to_json(summary: RepositorySummary) -> Dict[str, Any]:
    return {
        "repositoryName": summary.repository_name,
        "totalDeployments": summary.total_deployments,
        "latestVersion": summary.latest_version,
        "firstDeployed": _timestamp(summary.first_deployed),
        "lastDeployed": _timestamp(summary.last_deployed),
        "versionStats": stats_to_json(summary.version_stats),
    }


def pagination_to_json(pagination: Pagination) -> Dict[str, Any]:
    return {
        "total": pagination.total,
        "limit": pagination.limit,
        "offset": pagination.offset,
        "hasMore": pagination.has_more,
    }


def envelope(message: str, data: Any = None, success: bool = True, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def summaries_to_json(summaries: List[RepositorySummary]) -> List[Dict[str, Any]]:
    return [summary_to_json(s) for s in summaries]
