# classes/stripe_webhooks.py

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import stripe

from classes.errors import WebhookRejected
from classes.google_helpers import get_secret, logger
from classes.idempotency_cache import IDEMPOTENCY_CACHE, IdempotencyCache, event_key
from classes.webhook_log_recorder import record_webhook_log

SOURCE = "stripe"
PROVIDER = "stripe"

SUBSCRIPTIONS_COLLECTION = "subscriptions"
PAYMENT_LOGS_COLLECTION = "payment_logs"

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    md = obj.get("metadata") or {}
    return dict(md)


class StripeWebhookProcessor:
    """
    Verifies a Stripe webhook with stripe.Webhook.construct_event and applies
    the subscription/invoice state it carries. Event ids share the process-local
    idempotency cache with GoCardless events.
    """

    def __init__(self, db, cache: Optional[IdempotencyCache] = None, secret: Optional[str] = None):
        self.db = db
        self.cache = cache if cache is not None else IDEMPOTENCY_CACHE
        self._secret = secret

        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._checkout_session_completed,
            "customer.subscription.created": self._subscription_upserted,
            "customer.subscription.updated": self._subscription_upserted,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_payment_succeeded,
            "invoice.payment_failed": self._invoice_payment_failed,
        }

    def handle(self, body: bytes, signature: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        logger.info("[Stripe Webhook] Received webhook event")
        try:
            event = self.authenticate(body, signature)
            self.process_event(event)
            return 200, {"received": True}
        except WebhookRejected as e:
            return e.status_code, {"error": e.message}
        except Exception:
            logger.exception("[Stripe Webhook] Error processing webhook")
            return 500, {"error": "Webhook processing failed"}

    def authenticate(self, body: bytes, signature: Optional[str]):
        if not signature:
            logger.error("[Stripe Webhook] Missing stripe-signature header")
            raise WebhookRejected(400, "Missing stripe-signature header")

        secret = self._secret or get_secret("STRIPE_WEBHOOK_SECRET")
        if not secret:
            logger.error("[Stripe Webhook] Missing STRIPE_WEBHOOK_SECRET")
            raise WebhookRejected(500, "Webhook secret not configured")

        try:
            payload = body.decode("utf-8") if isinstance(body, bytes) else body
        except UnicodeDecodeError as e:
            logger.error("[Stripe Webhook] Body is not valid UTF-8")
            raise WebhookRejected(400, "Invalid JSON payload") from e

        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"[Stripe Webhook] Signature verification failed: {e}")
            raise WebhookRejected(400, "Invalid signature") from e

        # handlers work on the plain JSON payload
        event = json.loads(payload)
        logger.info(f"[Stripe Webhook] Signature verified, event type: {event.get('type')}")
        return event

    def process_event(self, event) -> Dict[str, Any]:
        event_id = event.get("id")
        event_type = event.get("type")

        key = event_key(event_id, PROVIDER, event_type)
        if self.cache.seen(key):
            logger.info(f"[Stripe Webhook] Event {event_id} already processed, skipping")
            return {"status": "skipped", "reason": "already_processed"}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"[Stripe Webhook] Unhandled event type: {event_type}")
            result = {"status": "unhandled", "type": event_type}
        else:
            obj = (event.get("data") or {}).get("object") or {}
            result = handler(obj)

        self.cache.add(key)
        record_webhook_log(
            self.db,
            "event_processed",
            {"eventId": event_id, "type": event_type, "result": result},
            source=SOURCE,
        )
        return result

    # -----------------------
    # Handlers
    # -----------------------

    def _checkout_session_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"[Stripe Webhook] Checkout session completed: {session.get('id')}")
        md = _metadata(session)
        user_id = md.get("firebaseUserId")
        plan_id = md.get("planId")
        if not user_id or not plan_id:
            logger.error("[Stripe Webhook] Missing metadata in checkout session")
            return {"status": "ignored", "reason": "missing_metadata"}

        subscription_id = session.get("subscription") or session.get("id")
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {
                "userId": user_id,
                "planId": plan_id,
                "provider": PROVIDER,
                "status": "active",
                "stripeCustomerId": session.get("customer"),
                "stripeSubscriptionId": session.get("subscription"),
                "checkoutSessionId": session.get("id"),
                "updatedAt": _utcnow(),
            },
        )
        logger.info(f"[Stripe Webhook] Subscription activated for user: {user_id} plan: {plan_id}")
        return {"status": "subscription_activated", "subscriptionId": subscription_id}

    def _subscription_upserted(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = self._require_id(subscription)
        logger.info(f"[Stripe Webhook] Subscription {subscription.get('status')}: {subscription_id}")
        md = _metadata(subscription)
        data = {
            "stripeSubscriptionId": subscription_id,
            "stripeCustomerId": subscription.get("customer"),
            "provider": PROVIDER,
            "status": subscription.get("status") or "active",
            "updatedAt": _utcnow(),
        }
        if md.get("firebaseUserId"):
            data["userId"] = md["firebaseUserId"]
        if md.get("planId"):
            data["planId"] = md["planId"]
        self._upsert(SUBSCRIPTIONS_COLLECTION, subscription_id, data)
        return {"status": "subscription_updated", "subscriptionId": subscription_id}

    def _subscription_deleted(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = self._require_id(subscription)
        logger.info(f"[Stripe Webhook] Subscription deleted: {subscription_id}")
        now = _utcnow()
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {"status": "cancelled", "provider": PROVIDER, "cancelledAt": now, "updatedAt": now},
        )
        return {"status": "subscription_cancelled", "subscriptionId": subscription_id}

    def _invoice_payment_succeeded(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"[Stripe Webhook] Invoice payment succeeded: {invoice.get('id')}")
        self._log_invoice(invoice, "invoice_payment_succeeded", invoice.get("amount_paid"))
        return {"status": "payment_logged", "invoiceId": invoice.get("id")}

    def _invoice_payment_failed(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"[Stripe Webhook] Invoice payment failed: {invoice.get('id')}")
        self._log_invoice(invoice, "invoice_payment_failed", invoice.get("amount_due"))
        subscription_id = invoice.get("subscription")
        if subscription_id:
            self._upsert(
                SUBSCRIPTIONS_COLLECTION,
                subscription_id,
                {"status": "past_due", "provider": PROVIDER, "updatedAt": _utcnow()},
            )
        return {"status": "payment_failed", "invoiceId": invoice.get("id")}

    # -----------------------
    # Helpers
    # -----------------------

    def _log_invoice(self, invoice: Dict[str, Any], kind: str, amount: Any) -> None:
        self.db.collection(PAYMENT_LOGS_COLLECTION).add(
            {
                "subscriptionId": invoice.get("subscription"),
                "invoiceId": invoice.get("id"),
                "type": kind,
                "amount": amount,
                "currency": invoice.get("currency"),
                "provider": PROVIDER,
                "timestamp": _utcnow(),
            }
        )

    def _require_id(self, obj: Dict[str, Any]) -> str:
        value = obj.get("id")
        if not value:
            raise ValueError("Stripe object has no id")
        return str(value)

    def _upsert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.db.collection(collection).document(doc_id).set(data, merge=True)
