"""
FastAPI application factory for the operational endpoints of the dispatcher.

Only health and metrics are exposed here; sending is driven through the
publisher. Authentication is enforced through a configurable API token
carried in the ``X-API-Token`` header.
"""

from typing import Optional, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .service import WebPushDispatchService

service: WebPushDispatchService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class StatusResponse(BaseModel):
    ok: bool
    sender_state: Optional[str] = None
    queue_name: Optional[str] = None


def create_app(
    svc: WebPushDispatchService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Running :class:`webpush_dispatch.service.WebPushDispatchService`.
    api_token:
        Optional secret used to protect every endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    api = FastAPI(title="Web Push Dispatch", lifespan=lifespan)
    api.state.api_token = api_token

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return the health status and the sender lifecycle state."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return StatusResponse.model_validate(service.status())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
