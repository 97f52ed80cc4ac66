import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from relay.analytics import AnalyticsEngine
from relay.config import Settings, get_settings
from relay.conversations import ConversationIndex
from relay.ingestion import IngestionCoordinator, Outcome
from relay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from relay.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from relay.outbound import OutboundService
from relay.replies import ReplyGenerator, build_reply_generator
from relay.schemas import (
    AnalyticsResponse,
    BroadcastData,
    BroadcastFailureItem,
    BroadcastRequest,
    BroadcastResponse,
    BroadcastSuccessItem,
    BroadcastSummary,
    BusinessConfigRequest,
    BusinessListResponse,
    BusinessResponse,
    ConversationsResponse,
    ErrorResponse,
    HealthResponse,
    SendMessageRequest,
    SendMessageResponse,
    SentMessage,
    WebhookResponse,
    analytics_response,
    conversations_response,
)
from relay.storage import InMemoryMessageStore
from relay.tenants import TenantNotFoundError, TenantRegistry
from relay.whatsapp import WebhookVerificationError, WhatsAppClient, WhatsAppError


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components shared by the routes, wired once per application."""
    settings: Settings
    store: InMemoryMessageStore
    tenants: TenantRegistry
    whatsapp: WhatsAppClient
    ingestion: IngestionCoordinator
    outbound: OutboundService
    analytics: AnalyticsEngine
    conversations: ConversationIndex


def build_services(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    replies: Optional[ReplyGenerator] = None,
) -> Services:
    """
    Wire the store, tenant registry and provider clients together.

    Args:
        settings: Application settings
        transport: httpx transport for the WhatsApp client (tests use a mock)
        replies: Reply generator; chosen from settings when omitted
    """
    store = InMemoryMessageStore(
        conversation_limit=settings.CONVERSATION_HISTORY_LIMIT,
        tenant_limit=settings.TENANT_HISTORY_LIMIT,
    )
    tenants = TenantRegistry()
    whatsapp = WhatsAppClient(settings, transport=transport)
    return Services(
        settings=settings,
        store=store,
        tenants=tenants,
        whatsapp=whatsapp,
        ingestion=IngestionCoordinator(
            store,
            tenants,
            replies or build_reply_generator(settings),
            whatsapp,
            context_window=settings.CONTEXT_WINDOW,
        ),
        outbound=OutboundService(store, tenants, whatsapp),
        analytics=AnalyticsEngine(store),
        conversations=ConversationIndex(store),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_business(business_id: str, services: Services) -> None:
    if services.tenants.get(business_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Business not found"
        )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-wired components; built from settings at startup when omitted
    """
    settings = services.settings if services else get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        - Startup: wire services
        - Shutdown: close the provider HTTP client
        """
        app.state.services = services or build_services(settings)
        logger.info("Relay started")
        yield
        await app.state.services.whatsapp.aclose()

    app = FastAPI(
        title="Business Messaging Relay",
        description="WhatsApp business messaging relay with automated replies and analytics",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    ServicesDep = Annotated[Services, Depends(get_services)]

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(response: Response, services: ServicesDep) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the WhatsApp access token and
        verify token are configured. Otherwise returns 503.
        """
        config_status = services.whatsapp.config_status()
        missing = [name for name, present in config_status.items() if not present]
        if missing:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason=f"WhatsApp configuration missing: {', '.join(missing)}"
            )
        return HealthResponse(status="ready")

    # =========================================================================
    # Webhook Routes
    # =========================================================================

    @app.get(
        "/webhook",
        response_class=PlainTextResponse,
        responses={403: {"model": ErrorResponse, "description": "Verification failed"}},
    )
    async def verify_webhook(
        services: ServicesDep,
        mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
        token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
        challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    ) -> str:
        """Webhook subscription handshake: echo hub.challenge if the verify token matches."""
        logger.info("Webhook verification request received")
        try:
            return services.whatsapp.verify_subscription(mode, token, challenge)
        except WebhookVerificationError as e:
            logger.error(f"Webhook verification failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Webhook verification failed"
            )

    @app.post(
        "/webhook",
        response_model=WebhookResponse,
        responses={422: {"description": "Invalid JSON"}},
    )
    async def receive_webhook(request: Request, services: ServicesDep) -> WebhookResponse:
        """
        Receive inbound message and status events from WhatsApp.

        Well-formed JSON is always acknowledged with 200: unknown businesses,
        unsupported change types and per-message failures are recorded in the
        response counts rather than failing the delivery.
        """
        logger.info("Webhook message received")
        raw_body = await request.body()
        logger.debug(f"Request body size: {len(raw_body)} bytes")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Invalid JSON: {e}")
            log_webhook_data(request=request, result="validation_error")
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Invalid JSON: {str(e)}"
            )

        report = await services.ingestion.process(payload)
        for item in report.outcomes:
            record_webhook_outcome(item.kind.value, item.outcome.value)
        log_webhook_data(request=request, report=report, result="processed")

        return WebhookResponse(
            processed=report.count(Outcome.PROCESSED, Outcome.REPLIED),
            replied=report.count(Outcome.REPLIED),
            failed=report.count(Outcome.FAILED),
            skipped=report.count(Outcome.SKIPPED),
            statuses_applied=report.count(Outcome.STATUS_APPLIED),
        )

    # =========================================================================
    # Business Configuration Routes
    # =========================================================================

    @app.get("/business/all", response_model=BusinessListResponse)
    async def list_businesses(services: ServicesDep) -> BusinessListResponse:
        return BusinessListResponse(results=services.tenants.list())

    @app.post(
        "/business/configure",
        response_model=BusinessResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def configure_business(body: BusinessConfigRequest, services: ServicesDep) -> BusinessResponse:
        """Register a business and the WhatsApp phone number id it receives messages on."""
        tenant = services.tenants.create(body.to_config())
        return BusinessResponse(data=tenant, message="Business configured successfully")

    @app.get(
        "/business/configure/{business_id}",
        response_model=BusinessResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_business(business_id: str, services: ServicesDep) -> BusinessResponse:
        tenant = services.tenants.get(business_id)
        if tenant is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Business configuration not found"
            )
        return BusinessResponse(data=tenant)

    @app.put(
        "/business/configure/{business_id}",
        response_model=BusinessResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def update_business(
        business_id: str,
        body: BusinessConfigRequest,
        services: ServicesDep,
    ) -> BusinessResponse:
        try:
            tenant = services.tenants.update(business_id, body.model_dump())
        except TenantNotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Business configuration not found"
            )
        return BusinessResponse(data=tenant, message="Business configuration updated")

    # =========================================================================
    # Outbound Message Routes
    # =========================================================================

    @app.post(
        "/business/send-message",
        response_model=SendMessageResponse,
        responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    )
    async def send_message(body: SendMessageRequest, services: ServicesDep) -> SendMessageResponse:
        """Send a message from a business and record it in the conversation."""
        try:
            message = await services.outbound.send(body.business_id, body.to, body.message, body.type)
        except TenantNotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Business not found"
            )
        except WhatsAppError as e:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=str(e)
            )
        return SendMessageResponse(data=SentMessage(
            message_id=message.message_id,
            to=message.counterparty,
            timestamp=message.timestamp,
        ))

    @app.post(
        "/business/broadcast",
        response_model=BroadcastResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def broadcast(body: BroadcastRequest, services: ServicesDep) -> BroadcastResponse:
        """Send one message to several recipients; per-recipient failures are reported, not raised."""
        try:
            result = await services.outbound.broadcast(
                body.business_id, body.recipients, body.message, body.type
            )
        except TenantNotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Business not found"
            )
        return BroadcastResponse(data=BroadcastData(
            successful=[
                BroadcastSuccessItem(recipient=item.recipient, message_id=item.message_id)
                for item in result.successful
            ],
            failed=[
                BroadcastFailureItem(recipient=item.recipient, error=item.error)
                for item in result.failed
            ],
            summary=BroadcastSummary(
                total=result.total,
                successful=len(result.successful),
                failed=len(result.failed),
            ),
        ))

    # =========================================================================
    # Analytics Routes
    # =========================================================================

    @app.get(
        "/business/analytics/{business_id}",
        response_model=AnalyticsResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_analytics(business_id: str, services: ServicesDep) -> AnalyticsResponse:
        """Message counts for today, the last 7 days and the current month."""
        require_business(business_id, services)
        return analytics_response(services.analytics.compute_analytics(business_id))

    @app.get(
        "/business/conversations/{business_id}",
        response_model=ConversationsResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_conversations(
        business_id: str,
        services: ServicesDep,
        page: Annotated[int, Query(ge=1, description="Page number (1-indexed)")] = 1,
        limit: Annotated[int, Query(ge=1, le=100, description="Conversations per page")] = 20,
        client_phone: Annotated[Optional[str], Query(description="Only this client (exact match)")] = None,
    ) -> ConversationsResponse:
        """Conversations of a business, most recently active first."""
        require_business(business_id, services)
        page_data = services.conversations.list_conversations(
            business_id, page=page, page_size=limit, counterparty=client_phone
        )
        return conversations_response(page_data)

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
