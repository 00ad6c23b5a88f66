"""HTTP surface of the login admission gateway."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .admission import InvalidRequest
from .config import Settings
from .database import Database, PolicyConflict, PolicyMalformed, StorageUnavailable
from .gateway import AdmissionGateway
from .models import LoginEvent, PolicyState
from .policy import PolicyAdministrator
from .security import DisabledAuth, TokenAuth, build_admin_auth

logger = logging.getLogger("chatgate.service")


class MaxUsersRequest(BaseModel):
    max: Any = None


class MaxUsersResponse(BaseModel):
    max: int


class EmailListRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    emails: Any = Field(default=None, alias="list")
    revision: Optional[int] = None


class WhitelistRequest(BaseModel):
    whitelist: Any = None


class WhitelistResponse(BaseModel):
    whitelist: List[str]


class PolicyResponse(BaseModel):
    maxUsers: int
    allowList: List[str]
    blockList: List[str]
    revision: int


class ListUpdateResponse(BaseModel):
    success: bool = True
    revision: int


class LoginEventResponse(BaseModel):
    id: int
    userId: str
    email: str
    timestamp: datetime
    location: Optional[str]


class PurgeResponse(BaseModel):
    identity: str
    removed: int


def _policy_to_response(policy: PolicyState) -> PolicyResponse:
    return PolicyResponse(
        maxUsers=policy.max_users,
        allowList=list(policy.allow_list),
        blockList=list(policy.block_list),
        revision=policy.revision,
    )


def _event_to_response(event: LoginEvent) -> LoginEventResponse:
    return LoginEventResponse(
        id=event.id,
        userId=event.user_id,
        email=event.email,
        timestamp=event.timestamp,
        location=event.location,
    )


async def _read_json_object(request: Request) -> Dict[str, object]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequest("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _error(status_code: int, message: str, **extra: object) -> JSONResponse:
    content: Dict[str, object] = {"error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    admin_auth: TokenAuth | DisabledAuth | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    """Build the gateway application.

    When ``database`` is omitted one is created from ``settings`` (or the
    environment) and initialised with the configured policy seed.
    """

    if settings is None:
        settings = Settings.from_env()

    if database is None:
        seed = settings.policy_seed()
        database = Database(
            settings.database_path,
            busy_timeout=settings.busy_timeout,
            seed=seed.to_policy() if seed else None,
        )
        database.initialize()
    elif initialize_database:
        database.initialize()

    if admin_auth is None:
        admin_auth = build_admin_auth(settings.admin_tokens)

    gateway = AdmissionGateway(database)
    administrator = PolicyAdministrator(database)

    app = FastAPI(
        title="Chat Login Admission Gateway",
        description="Per-email admission control for the shared chat assistant",
        version="1.0.0",
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxy_hosts())
    app.state.database = database
    app.state.gateway = gateway
    app.state.administrator = administrator

    require_admin = [Depends(admin_auth)]

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/track-login")
    async def track_login(request: Request) -> JSONResponse:
        payload = await _read_json_object(request)
        location = request.client.host if request.client else None
        result = await gateway.attempt_login(payload, location=location)
        status_code = status.HTTP_200_OK if result.admitted else status.HTTP_403_FORBIDDEN
        return JSONResponse(status_code=status_code, content=result.to_payload())

    @app.get("/api/policy", response_model=PolicyResponse, dependencies=require_admin)
    def get_policy() -> PolicyResponse:
        return _policy_to_response(administrator.get_policy())

    @app.get("/api/max-users", response_model=MaxUsersResponse, dependencies=require_admin)
    def get_max_users() -> MaxUsersResponse:
        return MaxUsersResponse(max=administrator.get_policy().max_users)

    @app.put("/api/max-users", response_model=MaxUsersResponse, dependencies=require_admin)
    def put_max_users(request: MaxUsersRequest) -> MaxUsersResponse:
        policy = administrator.set_max_users(request.max)
        return MaxUsersResponse(max=policy.max_users)

    @app.put("/api/policy/allow-list", response_model=ListUpdateResponse, dependencies=require_admin)
    def put_allow_list(request: EmailListRequest) -> ListUpdateResponse:
        policy = administrator.set_allow_list(request.emails, expected_revision=request.revision)
        return ListUpdateResponse(revision=policy.revision)

    @app.put("/api/policy/block-list", response_model=ListUpdateResponse, dependencies=require_admin)
    def put_block_list(request: EmailListRequest) -> ListUpdateResponse:
        policy = administrator.set_block_list(request.emails, expected_revision=request.revision)
        return ListUpdateResponse(revision=policy.revision)

    @app.get("/api/whitelist", response_model=WhitelistResponse, dependencies=require_admin)
    def get_whitelist() -> WhitelistResponse:
        return WhitelistResponse(whitelist=list(administrator.get_policy().allow_list))

    @app.put("/api/whitelist", response_model=ListUpdateResponse, dependencies=require_admin)
    def put_whitelist(request: WhitelistRequest) -> ListUpdateResponse:
        policy = administrator.set_allow_list(request.whitelist)
        return ListUpdateResponse(revision=policy.revision)

    @app.get("/api/login-events", response_model=List[LoginEventResponse], dependencies=require_admin)
    @app.get("/api/admin-logins", response_model=List[LoginEventResponse], dependencies=require_admin)
    def list_login_events(
        limit: Optional[int] = Query(default=None, ge=1, le=10_000),
    ) -> List[LoginEventResponse]:
        return [_event_to_response(event) for event in administrator.list_login_events(limit=limit)]

    @app.delete("/api/login-events", response_model=PurgeResponse, dependencies=require_admin)
    @app.delete("/api/admin-logins", response_model=PurgeResponse, dependencies=require_admin)
    def purge_login_events(identity: str = Query(..., min_length=1, max_length=320)) -> PurgeResponse:
        removed = administrator.purge_identity(identity)
        return PurgeResponse(identity=identity.strip(), removed=removed)

    @app.exception_handler(InvalidRequest)
    async def handle_invalid_request(_: Request, exc: InvalidRequest) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(PolicyMalformed)
    async def handle_policy_malformed(_: Request, exc: PolicyMalformed) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(PolicyConflict)
    async def handle_policy_conflict(_: Request, exc: PolicyConflict) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), revision=exc.actual)

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
        logger.error("Storage unavailable while serving %s %s: %s", request.method, request.url.path, exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Login service is temporarily unavailable. Please retry.",
            retryable=True,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return _error(status.HTTP_400_BAD_REQUEST, "; ".join(messages) or "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        response = _error(exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    return app


def create_application() -> FastAPI:
    """Factory for ``uvicorn --factory chatgate.service:create_application``."""

    return create_app()


__all__ = ["create_app", "create_application"]
