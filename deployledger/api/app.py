import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deployledger.api.schemas import (
    DeployRequest,
    annotated_to_json,
    envelope,
    pagination_to_json,
    record_to_json,
    summaries_to_json,
)
from deployledger.application.deployment_service import (
    DEFAULT_PAGE_LIMIT,
    DeploymentService,
)
from deployledger.domain.exceptions import (
    DeploymentException,
    NoOpRejectionException,
    NotFoundException,
    PersistenceException,
    StorageUnavailableException,
    ValidationException,
    VersionConflictException,
)
from deployledger.domain.models import canonical_owner

logger = logging.getLogger(__name__)


def get_service(request: Request) -> DeploymentService:
    return request.app.state.service


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(message, success=False, **extra))


def register_exception_handlers(app: FastAPI) -> None:
    """Maps the service's error kinds to status codes; only here do HTTP details appear."""

    @app.exception_handler(ValidationException)
    async def validation_failed(request: Request, exc: ValidationException):
        return _error(400, "Validation failed", errors=exc.errors)

    @app.exception_handler(RequestValidationError)
    async def malformed_request(request: Request, exc: RequestValidationError):
        errors: Dict[str, str] = {}
        for item in exc.errors():
            # drop the "body"/"query"/"path" prefix
            loc = [str(part) for part in item.get("loc", ())][1:]
            errors.setdefault(".".join(loc) or "body", item.get("msg", "Invalid value"))
        return _error(400, "Validation failed", errors=errors)

    @app.exception_handler(NoOpRejectionException)
    async def nothing_to_commit(request: Request, exc: NoOpRejectionException):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundException)
    async def not_found(request: Request, exc: NotFoundException):
        return _error(404, str(exc))

    @app.exception_handler(VersionConflictException)
    async def version_conflict(request: Request, exc: VersionConflictException):
        logger.warning(f"Version conflict on {request.url.path}: {exc}")
        return _error(409, "Deployment conflicted with a concurrent deployment, please retry")

    @app.exception_handler(StorageUnavailableException)
    async def storage_unavailable(request: Request, exc: StorageUnavailableException):
        logger.error(f"Storage unavailable on {request.url.path}: {exc}")
        return _error(503, "Storage is temporarily unavailable, please retry later")

    @app.exception_handler(PersistenceException)
    async def persistence_failed(request: Request, exc: PersistenceException):
        logger.error(f"Persistence failure on {request.url.path}: {exc}")
        return _error(500, "Failed to process deployment")

    @app.exception_handler(DeploymentException)
    async def unexpected_failure(request: Request, exc: DeploymentException):
        logger.exception(f"Unhandled deployment error on {request.url.path}: {exc}")
        return _error(500, "Internal error")


def create_app(service: DeploymentService, lifespan=None) -> FastAPI:
    """Builds the HTTP binding around an already constructed DeploymentService."""
    app = FastAPI(
        title="deployledger",
        description="Semantic versioning for smart-contract deployments",
        lifespan=lifespan,
    )
    app.state.service = service
    register_exception_handlers(app)

    @app.get("/health")
    async def health(service: DeploymentService = Depends(get_service)):
        return {"status": "ok", "payloadStrategy": service.payload_strategy.kind.value}

    @app.post("/api/deploy", status_code=201)
    async def deploy(body: DeployRequest, service: DeploymentService = Depends(get_service)):
        result = await service.deploy(body.owner, body.repository_name, body.payload)
        message = (
            "Deployment created successfully (first version)"
            if result.first_deployment
            else "Deployment created successfully with new version"
        )
        return envelope(message, {"deployment": record_to_json(result.record, changed=result.changed)})

    @app.get("/api/deployments/{owner}")
    async def list_by_owner(
        owner: str,
        limit: int = Query(DEFAULT_PAGE_LIMIT),
        offset: int = Query(0),
        sort: str = Query("desc"),
        annotate: bool = Query(False),
        service: DeploymentService = Depends(get_service),
    ):
        result = await service.list_by_owner(owner, limit, offset, sort, annotate=annotate)
        message = "Deployments retrieved successfully" if result.pagination.total else "No deployments found"
        return envelope(message, {
            "owner": result.owner,
            "records": [annotated_to_json(item) for item in result.records],
            "pagination": pagination_to_json(result.pagination),
            "repositories": summaries_to_json(result.repositories),
        })

    @app.get("/api/deployments/{owner}/{repo}")
    async def list_by_repository(
        owner: str,
        repo: str,
        limit: Optional[int] = Query(None),
        offset: int = Query(0),
        include_payload: bool = Query(False, alias="includePayload"),
        service: DeploymentService = Depends(get_service),
    ):
        history = await service.list_by_repository(owner, repo, limit, offset, include_payload)
        return envelope("Deployment history retrieved successfully", {
            "owner": history.identity.owner,
            "repositoryName": history.identity.repository_name,
            "total": history.total,
            "records": [annotated_to_json(item, include_payload) for item in history.records],
        })

    @app.get("/api/deployment/{record_id}")
    async def get_deployment(record_id: str, service: DeploymentService = Depends(get_service)):
        record = await service.get_deployment(record_id)
        return envelope("Deployment retrieved successfully", {"deployment": record_to_json(record)})

    @app.get("/api/stats/{owner}")
    async def owner_stats(owner: str, service: DeploymentService = Depends(get_service)):
        summaries = await service.owner_stats(owner)
        return envelope("Deployment statistics retrieved successfully", {
            "owner": canonical_owner(owner),
            "repositories": summaries_to_json(summaries),
        })

    @app.get("/api/payload/{content_hash}")
    async def fetch_payload(content_hash: str, service: DeploymentService = Depends(get_service)):
        payload = await service.fetch_payload(content_hash)
        return envelope("Contract code retrieved successfully", {
            "contentHash": content_hash,
            "payload": payload,
        })

    return app
