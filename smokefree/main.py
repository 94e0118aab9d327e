import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import REGISTRY, generate_latest

from smokefree.config import Config
from smokefree.config.logging_config import configure_logging
from smokefree.services.startup import lifespan
from smokefree.utils.error_handlers import register_exception_handlers

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Sampling strategy:
        - Errors: always (parent_sampled)
        - Development: 100%
        - Health/metrics endpoints: 0%
        - Webhooks and activation: 50% (low volume, money-moving)
        - Everything else: SENTRY_TRACES_SAMPLE_RATE
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint in ["/health", "/metrics"]:
            return 0.0

        if endpoint in ["/stripe-webhook", "/activate-subscription", "/handle-subscription-cancel"]:
            return 0.5

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="SmokeFree Entitlements API",
        description="Premium subscription checkout, entitlement reconciliation and refunds",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "content-type", "x-client-info", "apikey", "x-premium-override"],
    )
    logger.info(f"CORS allowed origins: {Config.ALLOWED_ORIGINS}")

    register_exception_handlers(app)

    from smokefree.routes.health import router as health_router
    from smokefree.routes.subscriptions import router as subscriptions_router
    from smokefree.routes.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(subscriptions_router)
    app.include_router(webhooks_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
