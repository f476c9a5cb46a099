# api/server.py
# ============================================================================
# ECHOBEATS LANDING — FASTAPI SERVER
# ============================================================================
# Checkout API: newsletter signup, payment intents, Stripe webhooks and
# wallet domain verification. Built by create_app() from an explicit
# AppConfig so tests can inject their own store and gateway.
# ============================================================================

import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import AppConfig
from errors import CheckoutError, GatewayError, GatewayUnavailable, SignatureError, ValidationError
from pipeline.agents.order_lifecycle import OrderLifecycleController
from pipeline.agents.payment_gateway import SIGNATURE_HEADER, PaymentGateway, StripeGateway
from schemas.orders import (
    ErrorResponse,
    HealthResponse,
    PaymentIntentResponse,
    StripeConfigResponse,
    SubscribeResponse,
    VerifyDomainResponse,
    WebhookAck,
    field_errors_from,
    order_to_json,
)
from services.domain_verification import DomainVerificationHelper
from services.newsletter import NewsletterService
from storage.order_store import IStore, create_store

VERSION = "1.0.0"

logger = structlog.get_logger(component="server")


# =============================================================================
# LOGGING
# =============================================================================

def configure_logging(config: AppConfig):
    """structlog to stdout; JSON in production, console renderer in development."""
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)

    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _error_body(message: str, errors=None) -> dict:
    return ErrorResponse(message=message, errors=errors).model_dump(
        by_alias=True, exclude_none=True
    )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[IStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    config = config or AppConfig.from_env()
    configure_logging(config)

    store = store or create_store(config)
    gateway = gateway or StripeGateway(
        config.stripe_secret_key, timeout_seconds=config.gateway_timeout_seconds
    )
    controller = OrderLifecycleController(store, gateway, config)
    newsletter = NewsletterService(store)
    domain_helper = DomainVerificationHelper(gateway, config.stripe_publishable_key)
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "startup",
            version=VERSION,
            storage=store.backend_name,
            gateway_configured=gateway.is_configured(),
            webhook_secret_configured=bool(config.stripe_webhook_secret),
        )
        await store.initialize()
        yield
        await store.close()
        logger.info("shutdown")

    app = FastAPI(
        title="EchoBeats Landing API",
        description="Checkout and newsletter backend for the EchoBeats landing page",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.gateway = gateway
    app.state.controller = controller
    app.state.newsletter = newsletter
    app.state.domain_helper = domain_helper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def log_api_requests(request: Request, call_next):
        if config.domain_verification_enabled and not domain_helper.attempted:
            domain_helper.schedule(str(request.base_url))

        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"

        if request.url.path.startswith("/api"):
            logger.info(
                "api_request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round(duration, 2),
            )
        return response

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=_error_body(exc.message, exc.errors))

    @app.exception_handler(CheckoutError)
    async def on_checkout_error(request: Request, exc: CheckoutError):
        if exc.status_code >= 500 and not isinstance(exc, GatewayUnavailable):
            logger.error("checkout_error", path=request.url.path, error=exc.message)
            return JSONResponse(status_code=exc.status_code, content=_error_body(exc.public_message))
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError):
        errors = field_errors_from(exc, skip_prefix=("body",))
        details = "; ".join(f"{e.field}: {e.message}" for e in errors)
        return JSONResponse(status_code=400, content=_error_body(f"Validation error: {details}", errors))

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail)))

    @app.exception_handler(Exception)
    async def on_unexpected_error(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content=_error_body("Internal server error"))

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.now(timezone.utc) - started_at).total_seconds(),
            storage_backend=store.backend_name,
            gateway_configured=gateway.is_configured(),
        )

    @app.get("/api/stripe/config", response_model=StripeConfigResponse)
    async def stripe_config():
        """Publishable key for the client; without it the checkout UI stays hidden."""
        enabled = config.payments_enabled and gateway.is_configured()
        return StripeConfigResponse(
            enabled=enabled,
            publishable_key=config.stripe_publishable_key if enabled else None,
        )

    @app.post("/api/subscribe", status_code=201, response_model=SubscribeResponse)
    async def subscribe(payload: Any = Body(default=None)):
        try:
            subscriber = await newsletter.subscribe(payload)
        except ValidationError:
            raise
        except Exception as e:
            logger.error("subscribe_failed", error=str(e), exc_info=e)
            raise HTTPException(status_code=500, detail="Failed to subscribe to newsletter")

        return SubscribeResponse(subscriber_id=subscriber.id)

    @app.post("/api/create-payment-intent", response_model=PaymentIntentResponse)
    async def create_payment_intent(payload: Any = Body(default=None)):
        """
        Create an order and a Stripe PaymentIntent for it.

        Returns the client secret the browser needs to confirm the payment.
        """
        try:
            result = await controller.create_payment_intent(payload)
        except (ValidationError, GatewayUnavailable):
            raise
        except GatewayError as e:
            logger.error("create_payment_intent_failed", error=e.message)
            raise HTTPException(status_code=500, detail="Failed to create payment intent")
        except Exception as e:
            logger.error("create_payment_intent_failed", error=str(e), exc_info=e)
            raise HTTPException(status_code=500, detail="Failed to create payment intent")

        return PaymentIntentResponse(client_secret=result.client_secret, order_id=result.order_id)

    @app.post("/api/stripe/verify-domain", response_model=VerifyDomainResponse)
    async def verify_domain(payload: Any = Body(default=None)):
        """Register a domain for Apple Pay. Already-registered domains succeed."""
        try:
            result = await controller.register_domain(payload)
        except (ValidationError, GatewayUnavailable):
            raise
        except Exception as e:
            logger.error("verify_domain_failed", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to verify domain")

        message = (
            "Domain already verified"
            if result.get("status") == "already_registered"
            else "Domain verified successfully"
        )
        return VerifyDomainResponse(message=message, domain=result["domain"])

    @app.post("/api/webhook", response_model=WebhookAck)
    async def stripe_webhook(request: Request):
        """
        Stripe webhook receiver.

        The body is read as raw bytes and handed over untouched; the signature
        covers those exact bytes.
        """
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)

        try:
            await controller.handle_webhook(raw_body, signature)
        except (SignatureError, GatewayUnavailable):
            raise
        except Exception as e:
            logger.error("webhook_processing_failed", error=str(e), exc_info=e)
            raise HTTPException(status_code=500, detail="Webhook processing failed")

        return WebhookAck(received=True)

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: int):
        order = await controller.get_order(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order_to_json(order)

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    config = AppConfig.from_env()
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level=config.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips=config.forwarded_allow_ips,
    )


if __name__ == "__main__":
    main()
