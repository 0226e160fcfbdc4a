"""
Tunnel API Router
REST endpoints for validating, previewing and running tunnel profiles
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import List
import logging

from hopchain.core.exceptions import (
    ChainCancelledError,
    CommandValidationError,
    HopConnectionError,
    InvalidProfileError,
    StructuralError,
    TunnelError,
)
from hopchain.models.ssh_tunnel import ActiveTunnel
from hopchain.models.tunnel_graph import (
    CommandResponse,
    PlanSummary,
    TunnelProfile,
    TunnelRequest,
    ValidationResult,
)
from hopchain.services.credentials import StaticCredentialResolver
from hopchain.services.tunnel_service import TunnelService, tunnel_service

logger = logging.getLogger(__name__)
router = APIRouter()


def get_tunnel_service() -> TunnelService:
    return tunnel_service


def _to_http_error(e: TunnelError) -> HTTPException:
    """Map a tunnel error to an HTTP error response"""
    if isinstance(e, InvalidProfileError):
        return HTTPException(
            status_code=422,
            detail={
                "message": "Tunnel validation failed",
                "errors": e.result.errors,
                "warnings": e.result.warnings,
            },
        )
    if isinstance(e, CommandValidationError):
        return HTTPException(
            status_code=400,
            detail={"message": str(e), "field": e.field, "character": e.character},
        )
    if isinstance(e, StructuralError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ChainCancelledError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, HopConnectionError):
        return HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "hop_index": e.hop_index,
                "host": e.host,
                "reason": e.reason,
            },
        )
    return HTTPException(status_code=500, detail=str(e))


@router.post("/validate", response_model=ValidationResult)
async def validate_tunnel(
    profile: TunnelProfile,
    service: TunnelService = Depends(get_tunnel_service),
) -> ValidationResult:
    """Validate a tunnel profile and return every error and warning"""
    return service.validate(profile)


@router.post("/resolve", response_model=PlanSummary)
async def resolve_tunnel(
    profile: TunnelProfile,
    service: TunnelService = Depends(get_tunnel_service),
) -> PlanSummary:
    """Resolve the hop order of a profile"""
    try:
        plan = service.resolve(profile)
    except TunnelError as e:
        raise _to_http_error(e)
    return PlanSummary.from_plan(plan, service.validate(profile).warnings)


@router.post("/command", response_model=CommandResponse)
async def generate_command(
    request: TunnelRequest,
    service: TunnelService = Depends(get_tunnel_service),
) -> CommandResponse:
    """Generate the ssh command equivalent to a profile"""
    resolver = StaticCredentialResolver(request.credentials)
    try:
        command = await service.generate_command(request.profile, resolver)
    except TunnelError as e:
        raise _to_http_error(e)
    return CommandResponse(command=command)


@router.post("/execute", response_model=ActiveTunnel)
async def execute_tunnel(
    request: TunnelRequest,
    service: TunnelService = Depends(get_tunnel_service),
) -> ActiveTunnel:
    """Build the live chain for a profile"""
    resolver = StaticCredentialResolver(request.credentials)
    try:
        return await service.execute(request.profile, resolver)
    except TunnelError as e:
        logger.error(f"Failed to execute tunnel '{request.profile.name}': {e}")
        raise _to_http_error(e)


@router.get("/active", response_model=List[ActiveTunnel])
async def list_active_tunnels(
    service: TunnelService = Depends(get_tunnel_service),
) -> List[ActiveTunnel]:
    """List running tunnels"""
    return service.list_active()


@router.delete("/{profile_id}")
async def stop_tunnel(
    profile_id: str,
    service: TunnelService = Depends(get_tunnel_service),
):
    """Stop the tunnel running for a profile"""
    stopped = await service.stop(profile_id)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"No running tunnel for profile {profile_id}")
    return {"message": f"Tunnel for profile {profile_id} stopped"}
