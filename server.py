import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict

from classes.auth import AuthError, get_current_user
from classes.backend import Backend
from classes.errors import BackendError
from classes.GCConnection_hlpr import get_firestore_client
from classes.gocardless_webhooks import GoCardlessWebhookProcessor
from classes.google_helpers import logger
from classes.stripe_webhooks import StripeWebhookProcessor
from classes.subscription_service import SubscriptionService

app = FastAPI(title="AllerQ backend")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    planId: Optional[str] = None
    billingPeriod: str = "monthly"


class GoCardlessRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    planId: Optional[str] = None
    action: Optional[str] = None
    redirectFlowId: Optional[str] = None
    sessionToken: Optional[str] = None


# -----------------------
# Dependencies (overridable in tests)
# -----------------------

def get_db():
    return get_firestore_client()


def get_backend(db=Depends(get_db)) -> Backend:
    return Backend(db)


def get_subscription_service(db=Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(db)


def get_gocardless_processor(db=Depends(get_db)) -> GoCardlessWebhookProcessor:
    return GoCardlessWebhookProcessor(db)


def get_stripe_processor(db=Depends(get_db)) -> StripeWebhookProcessor:
    return StripeWebhookProcessor(db)


# -----------------------
# Error mapping
# -----------------------

@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _run(fn: Callable[..., Any], *args, failure: str, **kwargs) -> Any:
    """
    Run a blocking handler off the event loop; unexpected errors become a 500 with `failure`.
    """
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except BackendError:
        raise
    except Exception as e:
        logger.exception(f"{failure}: {e}")
        raise BackendError(500, failure) from e


# -----------------------
# Routes
# -----------------------

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "service": "allerq-backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/webhooks/gocardless")
async def gocardless_webhook(
    request: Request,
    processor: GoCardlessWebhookProcessor = Depends(get_gocardless_processor),
):
    body = await request.body()
    signature = request.headers.get("webhook-signature")
    status_code, payload = await asyncio.to_thread(processor.handle, body, signature)
    return JSONResponse(status_code=status_code, content=payload)


@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    processor: StripeWebhookProcessor = Depends(get_stripe_processor),
):
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    status_code, payload = await asyncio.to_thread(processor.handle, body, signature)
    return JSONResponse(status_code=status_code, content=payload)


@app.post("/api/restaurants/{restaurant_id}/menus/{menu_id}/ai-process")
async def ai_process(
    restaurant_id: str,
    menu_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BackendError(400, "Invalid JSON body")
    return await _run(
        backend.handle_ai_process,
        user,
        restaurant_id,
        menu_id,
        payload,
        failure="Failed to process menu items with AI",
    )


@app.get("/api/subscriptions")
async def list_subscription_plans(service: SubscriptionService = Depends(get_subscription_service)):
    return await _run(service.list_plans, failure="Failed to fetch subscription plans")


@app.post("/api/subscriptions")
async def create_subscription(
    body: SubscriptionRequest,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await _run(
        service.start_stripe_checkout,
        user,
        body.planId,
        body.billingPeriod,
        failure="Failed to create subscription",
    )


@app.get("/api/subscriptions/me")
async def my_subscription(
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await _run(service.get_user_subscription, user["uid"], failure="Failed to fetch subscription")


@app.get("/api/subscriptions/gocardless")
async def gocardless_public_flow(
    planId: Optional[str] = Query(default=None),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await _run(service.start_public_gocardless_flow, planId, failure="Failed to create redirect flow")


@app.post("/api/subscriptions/gocardless")
async def gocardless_flow(
    body: GoCardlessRequest,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    if body.action == "complete_redirect":
        return await _run(
            service.complete_gocardless_flow,
            user["uid"],
            body.redirectFlowId,
            body.sessionToken,
            body.planId,
            failure="Failed to process GoCardless request",
        )
    return await _run(service.start_gocardless_flow, user, body.planId, failure="Failed to process GoCardless request")


@app.get("/api/subscriptions/gocardless/complete")
async def gocardless_complete(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
):
    params = {
        k: request.query_params.get(k)
        for k in ("redirect_flow_id", "session_token", "plan_id", "user_id")
    }
    try:
        target = await asyncio.to_thread(service.complete_gocardless_redirect, params)
    except Exception:
        logger.exception("[GoCardless Complete] Unexpected error")
        target = "/subscription-setup?error=unexpected_error"
    return RedirectResponse(url=target, status_code=307)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
