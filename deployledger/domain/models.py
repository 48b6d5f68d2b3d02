import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from deployledger.domain.exceptions import ValidationException

OWNER_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")
MAX_REPOSITORY_NAME_LENGTH = 100

# A fingerprint is the embedded payload itself or the content hash standing in for it.
Fingerprint = Union[str, Dict[str, Any]]


class IncrementKind(str, Enum):
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


class PayloadStrategyKind(str, Enum):
    EMBEDDED = "embedded"
    CONTENT_ADDRESSED = "content-addressed"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Identity(BaseModel):
    """
    The (owner, repository_name) key under which deployment history is tracked.
    The owner is canonicalized to lowercase so it can be used directly as a storage key.
    """
    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., description="Wallet address, 0x followed by 40 hex characters")
    repository_name: str = Field(..., description="Repository namespace under the owner")

    @field_validator("owner", mode="before")
    @classmethod
    def lowercase_owner(cls, v: Any) -> str:
        return _normalize_owner(v)

    @field_validator("repository_name", mode="before")
    @classmethod
    def trimmed_repository_name(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("Repository name is required")
        v = v.strip()
        if not v:
            raise ValueError("Repository name cannot be empty")
        if len(v) > MAX_REPOSITORY_NAME_LENGTH:
            raise ValueError(f"Repository name too long (max {MAX_REPOSITORY_NAME_LENGTH} characters)")
        return v

    @classmethod
    def parse(cls, owner: Any, repository_name: Any) -> "Identity":
        """Builds an Identity, raising ValidationException with per-field messages."""
        try:
            return cls(owner=owner, repository_name=repository_name)
        except ValidationError as e:
            raise ValidationException(field_errors(e)) from e


def _normalize_owner(v: Any) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError("Wallet address is required")
    v = v.strip()
    if not OWNER_PATTERN.fullmatch(v):
        raise ValueError("Invalid wallet address format")
    return v.lower()


def canonical_owner(owner: Any) -> str:
    """Validates and lowercases a wallet address on its own, for owner-wide queries."""
    try:
        return _normalize_owner(owner)
    except ValueError as e:
        raise ValidationException({"owner": str(e)}) from e


def field_errors(error: ValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ())) or "__root__"
        message = item.get("msg", "Invalid value")
        # pydantic prefixes messages raised from validators
        errors.setdefault(field, message.removeprefix("Value error, "))
    return errors


class DeploymentRecord(BaseModel):
    """
    Immutable entry of a repository's deployment history.
    Exactly one of payload (embedded strategy) or content_hash (content-addressed strategy) is set.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Store-assigned identifier, None until appended")
    owner: str
    repository_name: str
    version: str
    payload: Optional[Dict[str, Any]] = None
    content_hash: Optional[str] = None
    deployed_at: datetime

    @property
    def identity(self) -> Identity:
        return Identity(owner=self.owner, repository_name=self.repository_name)

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        if self.content_hash is not None:
            return self.content_hash
        return self.payload


class VersionStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    latest: Optional[str] = None
    oldest: Optional[str] = None
    distinct_major: int = 0
    distinct_minor_combinations: int = 0


class RepositorySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository_name: str
    total_deployments: int = Field(..., ge=0)
    latest_version: Optional[str] = None
    first_deployed: Optional[datetime] = None
    last_deployed: Optional[datetime] = None
    version_stats: VersionStats = Field(default_factory=VersionStats)


class RecordPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: List[DeploymentRecord]
    total: int = Field(..., ge=0)


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    limit: int
    offset: int
    has_more: bool


class AnnotatedRecord(BaseModel):
    """A record plus whether it differs from its predecessor in the same repository."""
    model_config = ConfigDict(frozen=True)

    record: DeploymentRecord
    changed: Optional[bool] = None
    payload: Optional[Dict[str, Any]] = None
    payload_error: Optional[str] = None


class DeploymentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    record: DeploymentRecord
    changed: bool = True
    first_deployment: bool = False


class OwnerDeployments(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    records: List[AnnotatedRecord]
    pagination: Pagination
    repositories: List[RepositorySummary]


class RepositoryHistory(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: Identity
    records: List[AnnotatedRecord]
    total: int
