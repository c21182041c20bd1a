from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import anyio
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from subsync.core.errors import PaymentProviderError, SignatureVerificationError
from subsync.core.logging import configure_logging
from subsync.core.settings import Settings, load_settings
from subsync.db import models
from subsync.db.session import create_engine, create_sessionmaker
from subsync.services.payments.service import PaymentGateway
from subsync.services.subscriptions.plans import Plan, PlanClassifier
from subsync.services.subscriptions.service import SubscriptionReconciler
from subsync.services.webhooks.dispatcher import WebhookDispatcher
from subsync.services.webhooks.verifier import construct_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

router = APIRouter()


class CheckoutRequest(BaseModel):
    user_id: str | None = None
    plan: str = "monthly"


class PortalRequest(BaseModel):
    customer_id: str | None = None


async def get_db(request: Request):
    async with request.app.state.sessionmaker() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    if not body.user_id:
        return JSONResponse({"error": "Missing user_id"}, status_code=400)

    plan = Plan.PREMIUM_YEARLY if body.plan == "yearly" else Plan.PREMIUM_MONTHLY
    classifier: PlanClassifier = request.app.state.classifier
    profile = await db.get(models.UserProfile, body.user_id)
    try:
        result = await gateway.create_checkout_session(
            user_id=body.user_id,
            price_id=classifier.price_for(plan),
            success_url=f"{settings.base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.base_url}/cancel",
            customer_id=profile.provider_customer_id if profile else None,
        )
    except PaymentProviderError as exc:
        logger.exception("Error creating checkout session for user %s", body.user_id)
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {"url": result.url}


@router.post("/create-portal-session")
async def create_portal_session(
    body: PortalRequest,
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
):
    if not body.customer_id:
        return JSONResponse({"error": "Missing customer_id"}, status_code=400)
    try:
        url = await gateway.create_portal_session(customer_id=body.customer_id, return_url=f"{settings.base_url}/profile")
    except PaymentProviderError as exc:
        logger.exception("Error creating portal session for customer %s", body.customer_id)
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {"url": url}


@router.post("/webhook")
async def webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    try:
        event = construct_event(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.stripe_webhook_secret,
            settings.webhook_tolerance_seconds,
        )
    except SignatureVerificationError as exc:
        logger.warning("Webhook signature error: %s", exc)
        return PlainTextResponse(f"Webhook Error: {exc}", status_code=400)

    dispatcher: WebhookDispatcher = request.app.state.dispatcher
    try:
        with anyio.fail_after(settings.webhook_timeout_seconds):
            outcome = await dispatcher.handle(db, event)
            await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Webhook processing error for %s (%s)", event.event_type, event.event_id)
        return PlainTextResponse("Webhook handler failed", status_code=500)

    logger.info("Webhook %s (%s): %s", event.event_type, event.event_id, outcome.value)
    return {"received": True}


def create_app(
    settings: Settings | None = None,
    *,
    gateway: PaymentGateway | None = None,
    engine: AsyncEngine | None = None,
) -> FastAPI:
    """Build the application with every collaborator constructed up front.

    Raises ``ConfigurationError`` when settings are missing or invalid, so a
    misconfigured process never starts serving.
    """
    if settings is None:
        settings = load_settings()
    configure_logging(settings.log_level)

    classifier = PlanClassifier(settings.stripe_price_id_monthly, settings.stripe_price_id_yearly)
    if gateway is None:
        gateway = PaymentGateway(
            secret_key=settings.stripe_secret_key,
            api_version=settings.stripe_api_version,
            timeout_seconds=settings.stripe_request_timeout_seconds,
        )
    if engine is None:
        engine = create_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.classifier = classifier
    app.state.gateway = gateway
    app.state.sessionmaker = create_sessionmaker(engine)
    app.state.dispatcher = WebhookDispatcher(SubscriptionReconciler(classifier, gateway))
    app.include_router(router)
    logger.info("%s ready (%s)", settings.app_name, settings.environment)
    return app
