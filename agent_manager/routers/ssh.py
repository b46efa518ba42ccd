"""SSH host-key trust and connection check routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agent_manager.database import get_db
from agent_manager.dependencies import get_gateway, get_key_manager, http_error
from agent_manager.errors import AuthenticationError, ManagerError, NotFoundError, StoreError
from agent_manager.schemas.credentials import ConnectionTestRequest, ConnectionTestResult
from agent_manager.schemas.host_key import (
    HostKeyRespondRequest,
    HostKeyRespondResult,
    HostKeyStatus,
    PendingVerification,
    TrustedHostResponse,
    TrustHostRequest,
)
from agent_manager.services import git_ops, settings_service
from agent_manager.services.host_keys import HostKeyGateway
from agent_manager.services.ssh_keys import SSHKeyManager

router = APIRouter()


@router.post("/host-key/respond", response_model=HostKeyRespondResult)
async def respond_to_host_key(
    body: HostKeyRespondRequest, gateway: HostKeyGateway = Depends(get_gateway)
):
    """Accept or reject a pending host key. Stale ids come back with success=false."""
    return await gateway.respond(body.request_id, body.response)


@router.get("/host-key/status", response_model=HostKeyStatus)
async def host_key_status(gateway: HostKeyGateway = Depends(get_gateway)):
    return HostKeyStatus(success=True, pending_count=gateway.get_pending_count())


@router.get("/host-key/pending", response_model=list[PendingVerification])
async def pending_host_keys(gateway: HostKeyGateway = Depends(get_gateway)):
    return gateway.pending_requests()


@router.get("/trusted-hosts", response_model=list[TrustedHostResponse])
async def list_trusted_hosts(gateway: HostKeyGateway = Depends(get_gateway)):
    try:
        return await gateway.list_trusted_hosts()
    except StoreError as exc:
        raise http_error(exc) from exc


@router.delete("/trusted-hosts/{host}", status_code=204)
async def remove_trusted_host(host: str, gateway: HostKeyGateway = Depends(get_gateway)):
    try:
        removed = await gateway.remove_trusted_host(host)
    except StoreError as exc:
        raise http_error(exc) from exc
    if not removed:
        raise http_error(NotFoundError(f"Host {host!r} is not trusted"))


@router.post("/trusted-hosts", response_model=TrustedHostResponse, status_code=201)
async def trust_host(body: TrustHostRequest, gateway: HostKeyGateway = Depends(get_gateway)):
    """Scan and trust a remote's host key without a pending request."""
    try:
        await gateway.auto_accept_host_key(body.remote)
        record = await gateway.get_trusted_host(body.remote)
    except ManagerError as exc:
        raise http_error(exc) from exc
    if record is None:
        raise http_error(StoreError(f"Failed to persist trusted host for {body.remote!r}"))
    return record


@router.post("/test-connection", response_model=ConnectionTestResult)
async def check_connection(
    body: ConnectionTestRequest,
    db: AsyncSession = Depends(get_db),
    gateway: HostKeyGateway = Depends(get_gateway),
    key_manager: SSHKeyManager = Depends(get_key_manager),
):
    """git ls-remote with the stored credentials; SSH hosts go through host-key verification first."""
    credentials = await settings_service.get_git_credentials(db)
    try:
        return await git_ops.check_connection(
            body.remote, credentials, gateway=gateway, key_manager=key_manager,
        )
    except AuthenticationError as exc:
        return ConnectionTestResult(success=False, remote=body.remote.strip(), error=str(exc))
    except ManagerError as exc:
        raise http_error(exc) from exc
