from fastapi import FastAPI

from checkout_service.authenticator import WebhookAuthenticator
from checkout_service.config import configure_logging, load_settings
from checkout_service.database import Base, make_engine, make_session_factory
from checkout_service.reconciler import OrderReconciler
from checkout_service.routes import router
from checkout_service.stripe_service import StripeGateway


def create_app(settings=None, gateway=None, session_factory=None) -> FastAPI:
    """
    Build the checkout service.

    Everything the handlers need lives on ``app.state``; nothing is configured
    at import time. Missing secrets fail here, before the app starts serving.
    Serve with ``uvicorn checkout_service.main:create_app --factory``.
    """
    if settings is None:
        settings = load_settings()
        configure_logging(settings.log_level)

    if session_factory is None:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        session_factory = make_session_factory(engine)

    if gateway is None:
        gateway = StripeGateway.from_settings(settings)

    app = FastAPI(title="Checkout Service")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.authenticator = WebhookAuthenticator(
        settings.stripe_webhook_secret, tolerance=settings.webhook_tolerance
    )
    app.state.reconciler = OrderReconciler(session_factory, gateway)

    app.include_router(router)
    return app
