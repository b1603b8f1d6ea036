# classes/subscription_service.py

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from google.cloud.firestore_v1.base_query import FieldFilter

from classes.errors import BackendError
from classes.gocardless_client import (
    GoCardlessGateway,
    GoCardlessNotConfigured,
    generate_session_token,
    trial_start_date,
)
from classes.google_helpers import PUBLIC_BASE_URL, logger
from classes.plans import SALES_CONTACT_EMAIL, TRIAL_DAYS, Plan, get_plan, list_plans
from classes.stripe_client import StripeGateway, StripeNotConfigured

SUBSCRIPTIONS_COLLECTION = "subscriptions"
ACCESS_STATUSES = ("active", "trialing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _split_name(name: Optional[str]):
    parts = (name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def _sort_stamp(value: Any) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return 0.0


class SubscriptionService:
    """
    Subscription setup on Stripe (card checkout) and GoCardless (direct debit
    redirect flow). Subscription state itself is owned by the webhooks; this
    service only starts flows and records the subscription GoCardless returns.
    """

    def __init__(
        self,
        db,
        stripe_gateway: Optional[StripeGateway] = None,
        gocardless_gateway: Optional[GoCardlessGateway] = None,
        public_base_url: Optional[str] = None,
    ):
        self.db = db
        self.stripe = stripe_gateway or StripeGateway()
        self.gocardless = gocardless_gateway or GoCardlessGateway()
        self.public_base_url = (public_base_url or PUBLIC_BASE_URL).rstrip("/")

    # -----------------------
    # Plans
    # -----------------------

    def list_plans(self) -> Dict[str, Any]:
        return {"success": True, "plans": [p.public_view() for p in list_plans()]}

    def _require_plan(
        self,
        plan_id: Optional[str],
        message: str = "Invalid plan selected",
        self_serve_only: bool = False,
    ) -> Plan:
        plan = get_plan(plan_id)
        if plan is None or (self_serve_only and not plan.self_serve):
            raise BackendError(400, message)
        return plan

    # -----------------------
    # Stripe
    # -----------------------

    def _demo_subscription(self, plan: Plan, user_id: str) -> Dict[str, Any]:
        now = _utcnow()
        return {
            "success": True,
            "type": "demo",
            "subscription": {
                "id": f"demo-sub-{int(now.timestamp() * 1000)}",
                "planId": plan.id,
                "status": "active",
                "userId": user_id,
                "createdAt": now.isoformat(),
            },
            "message": "Demo subscription created successfully",
        }

    def start_stripe_checkout(self, user: Dict[str, Any], plan_id: Optional[str], billing_period: str = "monthly") -> Dict[str, Any]:
        plan = self._require_plan(plan_id)
        user_id = user["uid"]

        if not plan.self_serve:
            return {
                "success": True,
                "type": "enterprise_contact",
                "message": "Enterprise plan requires custom setup. Our team will contact you.",
                "contactEmail": SALES_CONTACT_EMAIL,
            }

        price_id = plan.stripe_price_id
        if not price_id:
            logger.info(f"[Subscriptions] No Stripe price for plan: {plan.id}, returning demo subscription")
            return self._demo_subscription(plan, user_id)

        metadata = {"firebaseUserId": user_id, "planId": plan.id}
        try:
            customer = self.stripe.create_customer(
                email=user.get("email"),
                name=user.get("name"),
                metadata=metadata,
            )
        except StripeNotConfigured:
            logger.info("[Subscriptions] Stripe not configured, returning demo subscription")
            return self._demo_subscription(plan, user_id)
        except Exception as e:
            logger.error(f"[Subscriptions] Error creating Stripe customer: {e}")
            raise BackendError(500, "Failed to create customer account") from e

        try:
            session = self.stripe.create_checkout_session(
                customer_id=customer["id"],
                price_id=price_id,
                success_url=f"{self.public_base_url}/dashboard?subscription=success&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.public_base_url}/subscription-setup?cancelled=true",
                metadata={**metadata, "billingPeriod": billing_period},
                trial_period_days=TRIAL_DAYS,
            )
        except Exception as e:
            logger.error(f"[Subscriptions] Error creating checkout session: {e}")
            raise BackendError(500, "Failed to create subscription") from e
        logger.info(f"[Subscriptions] Checkout session created: {session['id']}")
        return {
            "success": True,
            "type": "checkout",
            "checkoutUrl": session["url"],
            "sessionId": session["id"],
        }

    # -----------------------
    # GoCardless
    # -----------------------

    def _complete_url(self, session_token: str, plan_id: str, user_id: str) -> str:
        query = urlencode({"session_token": session_token, "plan_id": plan_id, "user_id": user_id})
        return f"{self.public_base_url}/api/subscriptions/gocardless/complete?{query}"

    def start_public_gocardless_flow(self, plan_id: Optional[str]) -> Dict[str, Any]:
        plan = self._require_plan(plan_id, self_serve_only=True)

        session_token = generate_session_token()
        try:
            flow = self.gocardless.create_redirect_flow(
                description=f"{plan.gocardless_name} subscription setup",
                session_token=session_token,
                success_redirect_url=self._complete_url(session_token, plan.id, "anonymous"),
            )
        except GoCardlessNotConfigured:
            logger.info("[GoCardless] Not configured, returning demo response")
            return {
                "success": True,
                "type": "demo",
                "message": "GoCardless not configured - demo mode",
                "redirect_flow": {
                    "redirect_url": f"{self.public_base_url}/demo/gocardless-redirect",
                    "id": "demo_redirect_flow_id",
                },
                "session_token": "demo_session_token",
                "plan": plan.gocardless_view(),
            }
        except Exception as e:
            logger.error(f"[GoCardless] Error creating redirect flow: {e}")
            raise BackendError(500, "Failed to create redirect flow") from e
        logger.info(f"[GoCardless] Redirect flow created: {flow.id}")
        return {
            "success": True,
            "type": "redirect_flow_created",
            "redirect_flow": {"redirect_url": flow.redirect_url, "id": flow.id},
            "session_token": session_token,
            "plan": plan.gocardless_view(),
        }

    def start_gocardless_flow(self, user: Dict[str, Any], plan_id: Optional[str]) -> Dict[str, Any]:
        plan = self._require_plan(plan_id, self_serve_only=True)

        given_name, family_name = _split_name(user.get("name"))
        session_token = generate_session_token()
        try:
            flow = self.gocardless.create_redirect_flow(
                description=f"AllerQ {plan.name} - Monthly Subscription",
                session_token=session_token,
                success_redirect_url=self._complete_url(session_token, plan.id, user["uid"]),
                prefilled_customer={
                    "email": user.get("email"),
                    "given_name": given_name,
                    "family_name": family_name,
                },
            )
        except GoCardlessNotConfigured:
            logger.info("[GoCardless] Not configured, returning demo response")
            return {
                "success": True,
                "type": "demo",
                "message": "Demo mode: GoCardless direct debit setup",
                "demoRedirectUrl": "/dashboard?subscription=demo&payment_method=direct_debit",
            }
        except Exception as e:
            logger.error(f"[GoCardless] Error creating redirect flow: {e}")
            raise BackendError(500, "Failed to create direct debit setup") from e

        logger.info(f"[GoCardless] Redirect flow created: {flow.id}")
        return {
            "success": True,
            "type": "redirect",
            "redirectUrl": flow.redirect_url,
            "sessionToken": session_token,
            "redirectFlowId": flow.id,
        }

    def complete_gocardless_flow(
        self,
        user_id: str,
        redirect_flow_id: Optional[str],
        session_token: Optional[str],
        plan_id: Optional[str],
    ) -> Dict[str, Any]:
        """
        Complete the redirect flow, start the subscription after the trial and
        record it under subscriptions/{gocardless subscription id}.
        """
        if not redirect_flow_id or not session_token or not plan_id:
            raise BackendError(400, "Missing required parameters")
        plan = self._require_plan(plan_id, "Invalid plan", self_serve_only=True)

        try:
            flow = self.gocardless.complete_redirect_flow(redirect_flow_id, session_token)
            mandate_id = flow.links.mandate
            customer_id = flow.links.customer
            logger.info(f"[GoCardless] Redirect flow completed mandate={mandate_id} customer={customer_id}")

            trial_end = _utcnow() + timedelta(days=TRIAL_DAYS)
            subscription = self.gocardless.create_subscription(
                amount=plan.price,
                currency=plan.currency,
                name=plan.gocardless_name,
                interval_unit=plan.interval_unit,
                interval=plan.interval,
                mandate_id=mandate_id,
                metadata={
                    "firebaseUserId": user_id,
                    "planId": plan.id,
                    "customerId": customer_id,
                },
                start_date=trial_start_date(TRIAL_DAYS),
            )
        except GoCardlessNotConfigured:
            logger.info("[GoCardless] Not configured, returning demo subscription")
            return {
                "success": True,
                "type": "demo",
                "message": "Demo mode: GoCardless direct debit setup",
                "subscription": {"id": "demo_subscription", "planId": plan.id, "status": "active"},
            }
        except Exception as e:
            logger.error(f"[GoCardless] Error completing redirect: {e}")
            raise BackendError(500, "Failed to complete direct debit setup") from e

        logger.info(f"[GoCardless] Subscription created: {subscription.id}")
        now = _utcnow()
        self.db.collection(SUBSCRIPTIONS_COLLECTION).document(subscription.id).set(
            {
                "gocardlessId": subscription.id,
                "userId": user_id,
                "planId": plan.id,
                "provider": "gocardless",
                "status": subscription.status,
                "amount": subscription.amount,
                "currency": subscription.currency,
                "startDate": subscription.start_date,
                "trialEnd": trial_end,
                "mandateId": mandate_id,
                "customerId": customer_id,
                "createdAt": now,
                "updatedAt": now,
            },
            merge=True,
        )

        return {
            "success": True,
            "type": "subscription_created",
            "subscription": {
                "id": subscription.id,
                "status": subscription.status,
                "amount": subscription.amount,
                "currency": subscription.currency,
                "startDate": subscription.start_date,
                "mandateId": mandate_id,
                "customerId": customer_id,
            },
        }

    def complete_gocardless_redirect(self, params: Dict[str, Optional[str]]) -> str:
        """
        Browser landing after the GoCardless hosted pages. Returns the
        relative URL to redirect to.
        """
        redirect_flow_id = params.get("redirect_flow_id")
        session_token = params.get("session_token")
        plan_id = params.get("plan_id")
        user_id = params.get("user_id")

        if not redirect_flow_id or not session_token or not plan_id or not user_id:
            logger.error("[GoCardless Complete] Missing required parameters")
            return "/subscription-setup?error=missing_parameters"

        plan = get_plan(plan_id)
        if plan is None or not plan.self_serve:
            logger.error(f"[GoCardless Complete] Invalid plan: {plan_id}")
            return "/subscription-setup?error=invalid_plan"

        try:
            result = self.complete_gocardless_flow(user_id, redirect_flow_id, session_token, plan_id)
        except BackendError as e:
            logger.error(f"[GoCardless Complete] Error processing completion: {e}")
            query = urlencode({
                "error": "setup_failed",
                "message": "Failed to complete direct debit setup. Please try again.",
            })
            return f"/subscription-setup?{query}"

        if result["type"] == "demo":
            logger.info("[GoCardless Complete] Demo mode - redirecting to dashboard")
            return "/dashboard?subscription=demo&payment_method=direct_debit"

        query = urlencode({
            "subscription": "success",
            "payment_method": "direct_debit",
            "subscription_id": result["subscription"]["id"],
            "trial_days": str(TRIAL_DAYS),
        })
        return f"/dashboard?{query}"

    # -----------------------
    # Access
    # -----------------------

    def get_user_subscription(self, user_id: str) -> Dict[str, Any]:
        docs = (
            self.db.collection(SUBSCRIPTIONS_COLLECTION)
            .where(filter=FieldFilter("userId", "==", user_id))
            .stream()
        )
        subscriptions: List[Dict[str, Any]] = []
        for doc in docs:
            data = doc.to_dict() or {}
            data["id"] = doc.id
            subscriptions.append(data)

        if not subscriptions:
            return {"success": True, "subscription": None, "hasAccess": False}

        latest = max(
            subscriptions,
            key=lambda s: _sort_stamp(s.get("updatedAt") or s.get("createdAt")),
        )
        return {"success": True, "subscription": latest, "hasAccess": self.has_access(latest)}

    def has_access(self, subscription: Optional[Dict[str, Any]]) -> bool:
        if not subscription:
            return False
        return subscription.get("status") in ACCESS_STATUSES
