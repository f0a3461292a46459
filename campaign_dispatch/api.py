"""
FastAPI application factory and HTTP schemas for the campaign dispatch engine.

The module exposes a `create_app` function that builds the REST API used to
trigger queue processing, schedule email campaigns and send SMS batches, and
defines the pydantic payloads for each route. Authentication is enforced
through a configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict

from .core import DispatchCore
from .errors import ConfigurationError, DispatchError, PersistenceError, ValidationError

app = FastAPI(title="Campaign Dispatch")
service: DispatchCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class ProcessQueuePayload(BaseModel):
    limit: int = Field(default=5, ge=1, le=500)


class ProcessQueueResponse(CommandStatus):
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    dead: int = 0
    lost: int = 0


class RequeueStuckPayload(BaseModel):
    stuck_seconds: int = Field(default=300, ge=0)
    limit: int = Field(default=50, ge=1, le=1000)


class RequeueStuckResponse(CommandStatus):
    requeued: int = 0
    dead: int = 0


class ContactPayload(BaseModel):
    """Recipient of an email campaign."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    recipient_id: str = Field(alias="recipientId")
    email: str
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    context: Optional[Dict[str, Any]] = None


class ScheduleCampaignPayload(BaseModel):
    """Content and contacts used to fill an email campaign's queue."""
    subject: str
    html: str
    contacts: List[ContactPayload] = Field(default_factory=list)
    tags: Optional[Dict[str, str]] = None
    scheduled_for: Optional[int] = None


class ScheduleCampaignResponse(CommandStatus):
    queued: int = 0
    duplicates: int = 0
    spacing_ms: Optional[int] = None
    window_size: Optional[int] = None
    first_scheduled_for: Optional[int] = None
    last_scheduled_for: Optional[int] = None


class CampaignStatusResponse(CommandStatus):
    status: Optional[str] = None
    counts: Dict[str, int] = Field(default_factory=dict)


class SendSmsPayload(BaseModel):
    """One recipient, one or more destination numbers."""
    recipient_id: str
    numbers: Union[List[str], str]
    body: str
    campaign_id: Optional[str] = None
    media_urls: Optional[List[str]] = None
    dry_run: bool = False


class SmsResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    to: str
    status: str
    sid: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    thread_id: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


class SendSmsResponse(CommandStatus):
    results: List[SmsResult] = Field(default_factory=list)


def _http_error(exc: DispatchError) -> HTTPException:
    """Translate a dispatch error into the matching HTTP error."""
    if isinstance(exc, ValidationError):
        return HTTPException(status.HTTP_400_BAD_REQUEST, {"error": str(exc), "code": exc.code})
    if isinstance(exc, ConfigurationError):
        return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, {"error": str(exc), "code": exc.code})
    if isinstance(exc, PersistenceError):
        return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": str(exc), "code": exc.code})
    return HTTPException(status.HTTP_502_BAD_GATEWAY, {"error": exc.describe(), "code": exc.code})


def create_app(
    svc: DispatchCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`campaign_dispatch.core.DispatchCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Campaign Dispatch", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    queue = APIRouter(prefix="/email-queue", tags=["email"], dependencies=[auth_dependency])
    campaigns = APIRouter(prefix="/campaigns", tags=["campaigns"], dependencies=[auth_dependency])
    sms = APIRouter(prefix="/sms", tags=["sms"], dependencies=[auth_dependency])

    async def run(cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not service:
            raise HTTPException(500, "Service not initialized")
        try:
            return await service.handle_command(cmd, payload)
        except DispatchError as exc:
            raise _http_error(exc) from exc

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def health():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @queue.post("/process", response_model=ProcessQueueResponse, response_model_exclude_none=True)
    async def process_queue(payload: Optional[ProcessQueuePayload] = None):
        """Claim and deliver a batch of due email jobs."""
        payload = payload or ProcessQueuePayload()
        result = await run("processQueue", payload.model_dump())
        return ProcessQueueResponse.model_validate(result)

    @queue.post("/requeue-stuck", response_model=RequeueStuckResponse, response_model_exclude_none=True)
    async def requeue_stuck(payload: Optional[RequeueStuckPayload] = None):
        """Release jobs whose worker lease expired."""
        payload = payload or RequeueStuckPayload()
        result = await run("requeueStuck", payload.model_dump())
        return RequeueStuckResponse.model_validate(result)

    @campaigns.post("/{campaign_id}/schedule", response_model=ScheduleCampaignResponse, response_model_exclude_none=True)
    async def schedule_campaign(campaign_id: str, payload: ScheduleCampaignPayload):
        """Queue one email job per contact, spaced to fit the provider quota."""
        data = payload.model_dump(exclude_none=True)
        data["contacts"] = [contact.model_dump(exclude_none=True) for contact in payload.contacts]
        data["campaign_id"] = campaign_id
        result = await run("scheduleCampaign", data)
        return ScheduleCampaignResponse.model_validate(result)

    @campaigns.get("/{campaign_id}/status", response_model=CampaignStatusResponse, response_model_exclude_none=True)
    async def campaign_status(campaign_id: str):
        """Return the campaign's rolled-up status and per-state counts."""
        result = await run("campaignStatus", {"campaign_id": campaign_id})
        if not result.get("ok"):
            raise HTTPException(status.HTTP_404_NOT_FOUND, result.get("error"))
        return CampaignStatusResponse.model_validate(result)

    @sms.post("/send", response_model=SendSmsResponse, response_model_exclude_none=True, response_model_by_alias=True)
    async def send_sms(payload: SendSmsPayload):
        """Send a message to every number of one recipient."""
        result = await run("sendSms", payload.model_dump())
        return SendSmsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(queue)
    api.include_router(campaigns)
    api.include_router(sms)
    return api
