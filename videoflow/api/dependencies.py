from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from videoflow.core.config import get_settings
from videoflow.services import JobOrchestrator, JobQueryService


def get_current_owner(x_owner_id: Annotated[str | None, Header()] = None) -> str:
    """Principal id forwarded by the authenticating gateway."""
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header")
    if "/" in owner_id or len(owner_id) > 255:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid owner id")
    return owner_id


def get_admin_owner(
    owner_id: Annotated[str, Depends(get_current_owner)],
    x_owner_groups: Annotated[str | None, Header()] = None,
) -> str:
    """Principal that belongs to the admin group (comma-separated X-Owner-Groups)."""
    groups = {g.strip() for g in (x_owner_groups or "").split(",") if g.strip()}
    if get_settings().admin_group not in groups:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return owner_id


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_query_service(request: Request) -> JobQueryService:
    return request.app.state.queries


CurrentOwner = Annotated[str, Depends(get_current_owner)]
AdminOwner = Annotated[str, Depends(get_admin_owner)]
Orchestrator = Annotated[JobOrchestrator, Depends(get_orchestrator)]
QueryService = Annotated[JobQueryService, Depends(get_query_service)]
