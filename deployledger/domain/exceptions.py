from typing import Dict


class DeploymentException(Exception):
    """Base exception for all deployment-related errors."""
    pass

class ValidationException(DeploymentException):
    """Raised when identity fields or the payload are malformed."""
    def __init__(self, errors: Dict[str, str], message: str = "Validation failed."):
        self.errors = errors
        details = "; ".join(f"{field}: {reason}" for field, reason in errors.items())
        super().__init__(f"{message} {details}".strip())

class NoOpRejectionException(DeploymentException):
    """Raised when the submitted payload equals the latest deployed payload."""
    def __init__(self, message: str = "nothing to commit, everything is up to date"):
        super().__init__(message)

class StorageUnavailableException(DeploymentException):
    """Raised when a store or the payload store cannot be reached in time."""
    pass

class PersistenceException(DeploymentException):
    """Raised when the record store rejects a write."""
    pass

class VersionConflictException(PersistenceException):
    """Raised when another writer already stored the computed version."""
    def __init__(self, owner: str, repository_name: str, version: str):
        self.owner = owner
        self.repository_name = repository_name
        self.version = version
        super().__init__(f"Version {version} already exists for {owner}/{repository_name}.")

class NotFoundException(DeploymentException):
    """Raised when a requested record or payload does not exist."""
    pass

class InvalidVersionFormatException(DeploymentException, ValueError):
    """Raised when a version string is not MAJOR.MINOR.PATCH."""
    pass

class InvalidVersionComponentsException(DeploymentException, ValueError):
    """Raised when version components are negative or not integers."""
    pass
