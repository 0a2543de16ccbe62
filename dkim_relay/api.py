"""
FastAPI application factory for the DKIM relay.

``POST /send`` authenticates tenants with their API key carried as
``Authorization: Bearer <key>``. Every administrative endpoint is protected by
a configurable token carried in the ``X-API-Token`` header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader

from .core import RelayService
from .credentials import CredentialIdentity
from .errors import SEND_FAILURES, InvalidCredential, RateLimited, RelayError
from .models import BasicOkResponse, CredentialCreate, CredentialUpdate, DomainCreate, DomainUpdate, RotatePayload, SendRequest

app = FastAPI(title="DKIM Relay")
service: RelayService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

FAILURE_STATUS = {error.code: error.status for error in SEND_FAILURES}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the admin token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def _service() -> RelayService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


async def require_api_key(authorization: str | None = Header(default=None)) -> CredentialIdentity:
    """Resolve ``Authorization: Bearer <key>`` to the sending domain."""
    svc = _service()
    if not authorization:
        raise InvalidCredential("Missing Authorization header")
    scheme, _, key = authorization.partition(" ")
    if scheme != "Bearer" or not key.strip():
        raise InvalidCredential("Invalid Authorization format. Use: Bearer <api_key>")
    return await svc.authenticate(key.strip())


def _field_errors(exc: RequestValidationError) -> Dict[str, List[str]]:
    details: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
        details.setdefault(loc or "body", []).append(err.get("msg", "invalid value"))
    return details


def create_app(
    svc: RelayService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        :class:`dkim_relay.core.RelayService` implementing every operation.
    api_token:
        Optional secret protecting the admin endpoints through the
        ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="DKIM Relay", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token

    @api.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
        return JSONResponse(status_code=exc.status, content=exc.to_dict(), headers=headers)

    @api.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Validation failed", "details": _field_errors(exc)},
        )

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def health():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.post("/send")
    async def send(payload: SendRequest, identity: CredentialIdentity = Depends(require_api_key)):
        """Sign and deliver one message for the authenticated domain."""
        outcome = await _service().send(identity, payload.to_payload())
        if outcome.sent:
            return {"success": True, "messageId": outcome.message_id}
        details: Dict[str, Any] = {"attemptId": outcome.attempt_id, "code": outcome.error_code}
        if outcome.will_retry:
            details.update(willRetry=True, retryCount=outcome.retry_count, nextRetryAt=outcome.next_retry_at)
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={"success": False, "error": outcome.error, "details": details},
            )
        details["willRetry"] = False
        return JSONResponse(
            status_code=FAILURE_STATUS.get(outcome.error_code or "", status.HTTP_502_BAD_GATEWAY),
            content={"success": False, "error": outcome.error, "details": details},
        )

    router = APIRouter(dependencies=[auth_dependency])

    @router.post("/domains", status_code=status.HTTP_201_CREATED)
    async def add_domain(payload: DomainCreate):
        """Register a domain and return the DNS records it must publish."""
        return await _service().handle_command("addDomain", payload.model_dump())

    @router.get("/domains")
    async def list_domains(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100)):
        return await _service().handle_command("listDomains", {"page": page, "limit": limit})

    @router.get("/domains/{domain_id}")
    async def get_domain(domain_id: str):
        return await _service().handle_command("getDomain", {"id": domain_id})

    @router.patch("/domains/{domain_id}")
    async def update_domain(domain_id: str, payload: DomainUpdate):
        return await _service().handle_command("updateDomain", {"id": domain_id, **payload.model_dump()})

    @router.delete("/domains/{domain_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_domain(domain_id: str):
        """Delete a domain with its API keys and send history."""
        result = await _service().handle_command("deleteDomain", {"id": domain_id})
        return BasicOkResponse.model_validate(result)

    @router.get("/domains/{domain_id}/keys")
    async def list_keys(domain_id: str):
        return await _service().handle_command("listKeys", {"domain_id": domain_id})

    @router.post("/domains/{domain_id}/keys", status_code=status.HTTP_201_CREATED)
    async def issue_key(domain_id: str, payload: CredentialCreate):
        """Issue an API key; the raw key is only ever shown in this response."""
        return await _service().handle_command("issueKey", {"domain_id": domain_id, **payload.model_dump()})

    @router.patch("/keys/{key_id}")
    async def update_key(key_id: str, payload: CredentialUpdate):
        return await _service().handle_command("updateKey", {"id": key_id, "is_active": payload.is_active})

    @router.delete("/keys/{key_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_key(key_id: str):
        result = await _service().handle_command("deleteKey", {"id": key_id})
        return BasicOkResponse.model_validate(result)

    @router.post("/keys/{key_id}/rotate")
    async def rotate_key(key_id: str, payload: Optional[RotatePayload] = None):
        """Replace the secret of an API key; the new raw key is returned once."""
        data: Dict[str, Any] = {"id": key_id}
        if payload is not None and payload.expires_in:
            data["expires_in"] = payload.expires_in
        return await _service().handle_command("rotateKey", data)

    @router.get("/logs")
    async def list_logs(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        domain_id: Optional[str] = Query(None, alias="domainId"),
        status_filter: Optional[Literal["sent", "pending_retry", "failed"]] = Query(None, alias="status"),
    ):
        """Return send attempts, newest first."""
        return await _service().handle_command(
            "listAttempts", {"page": page, "limit": limit, "domain_id": domain_id, "status": status_filter}
        )

    @router.get("/logs/stats")
    async def log_stats():
        return await _service().handle_command("stats", {})

    @router.post("/commands/run-retries", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_retries():
        """Wake the retry scheduler without waiting for its interval."""
        result = await _service().handle_command("run retries", {})
        return BasicOkResponse.model_validate(result)

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
