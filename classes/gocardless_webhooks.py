# classes/gocardless_webhooks.py

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from classes.errors import WebhookRejected
from classes.gocardless_client import verify_webhook_signature
from classes.google_helpers import get_secret, logger
from classes.idempotency_cache import IDEMPOTENCY_CACHE, IdempotencyCache, event_key
from classes.webhook_log_recorder import record_webhook_log

SOURCE = "gocardless"
PROVIDER = "gocardless"

SUBSCRIPTIONS_COLLECTION = "subscriptions"
PAYMENT_LOGS_COLLECTION = "payment_logs"
PAYMENTS_COLLECTION = "payments"
MANDATES_COLLECTION = "mandates"
CUSTOMERS_COLLECTION = "customers"

PAYMENT_ACTIONS = ("created", "submitted", "confirmed", "paid_out", "failed", "cancelled", "charged_back")
MANDATE_ACTIONS = ("created", "submitted", "active", "cancelled", "failed", "expired")
CUSTOMER_ACTIONS = ("created", "updated")

Handler = Callable[[str, Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_created_at(value: Any) -> Any:
    """
    Provider timestamps are ISO-8601 strings ("2024-01-01T10:00:00.000Z").
    Unparseable values are stored as received.
    """
    if not isinstance(value, str) or not value:
        return value
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value


class GoCardlessWebhookProcessor:
    """
    Verifies and applies a GoCardless webhook batch.

    Flow:
    - authenticate: signature header + shared secret + JSON body
    - process_batch: one process_event per event, failures isolated per event
    - process_event: idempotency check, dispatch on resource_type, audit record

    Every state write is an upsert keyed by the provider id, so replaying an
    event after a restart (when the in-memory cache is empty) converges to the
    same document state.
    """

    def __init__(self, db, cache: Optional[IdempotencyCache] = None, secret: Optional[str] = None):
        self.db = db
        self.cache = cache if cache is not None else IDEMPOTENCY_CACHE
        self._secret = secret

        self._resource_handlers: Dict[str, Handler] = {
            "subscriptions": self._handle_subscription_event,
            "payments": self._handle_payment_event,
            "mandates": self._handle_mandate_event,
            "customers": self._handle_customer_event,
        }
        self._subscription_actions: Dict[str, Handler] = {
            "created": self._subscription_created,
            "payment_created": self._subscription_payment_created,
            "amended": self._subscription_amended,
            "cancelled": self._subscription_cancelled,
            "finished": self._subscription_finished,
        }

    # -----------------------
    # Request entry point
    # -----------------------

    def handle(self, body: bytes, signature: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """
        Returns (http_status, json_body) for the webhook request.
        """
        start = time.monotonic()
        event_ids: List[Any] = []
        logger.info("[GoCardless Webhook] Received webhook event")

        try:
            payload = self.authenticate(body, signature)

            events = payload.get("events")
            if events is None:
                events = []
            if not isinstance(events, list):
                raise WebhookRejected(400, "Invalid webhook payload")

            event_ids = [e.get("id") if isinstance(e, dict) else None for e in events]
            logger.info(f"[GoCardless Webhook] Processing {len(events)} events: {event_ids}")

            results = self.process_batch(events)

            self._audit(
                "webhook_processed",
                {
                    "eventCount": len(events),
                    "eventIds": event_ids,
                    "processingTime": self._elapsed_ms(start),
                    "results": results,
                },
            )
            return 200, {"received": True, "processed": len(events), "results": results}

        except WebhookRejected as e:
            return e.status_code, {"error": e.message}
        except Exception as e:
            logger.exception("[GoCardless Webhook] Error processing webhook")
            self._audit(
                "webhook_processing_failed",
                {"error": str(e), "eventIds": event_ids, "processingTime": self._elapsed_ms(start)},
            )
            return 500, {"error": "Webhook processing failed"}

    def authenticate(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            logger.error("[GoCardless Webhook] Missing webhook-signature header")
            raise WebhookRejected(400, "Missing webhook-signature header")

        secret = self._secret or get_secret("GOCARDLESS_WEBHOOK_SECRET")
        if not secret:
            logger.error("[GoCardless Webhook] Missing GOCARDLESS_WEBHOOK_SECRET")
            raise WebhookRejected(500, "Webhook secret not configured")

        if not verify_webhook_signature(body, signature, secret):
            logger.error("[GoCardless Webhook] Invalid signature")
            self._audit("signature_verification_failed", {"signature": signature, "bodyLength": len(body)})
            raise WebhookRejected(400, "Invalid signature")
        logger.info("[GoCardless Webhook] Signature verified")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("[GoCardless Webhook] Invalid JSON payload")
            self._audit("invalid_json_payload", {"error": str(e)})
            raise WebhookRejected(400, "Invalid JSON payload") from e

        if not isinstance(payload, dict):
            raise WebhookRejected(400, "Invalid webhook payload")
        return payload

    # -----------------------
    # Batch / event processing
    # -----------------------

    def process_batch(self, events: List[Any]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for event in events:
            event_id = event.get("id") if isinstance(event, dict) else None
            try:
                result = self.process_event(event)
                results.append({"eventId": event_id, "status": "success", "result": result})
            except Exception as e:
                logger.error(f"[GoCardless Webhook] Error processing event {event_id}: {e}")
                results.append({"eventId": event_id, "status": "error", "error": str(e)})
        return results

    def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(event, dict):
            raise ValueError("Malformed event")

        event_id = event.get("id")
        resource_type = event.get("resource_type")
        action = event.get("action")
        links = event.get("links") or {}
        logger.info(f"[GoCardless Webhook] Processing event: {event_id} ({resource_type}.{action})")

        key = event_key(event_id, resource_type, action)
        if self.cache.seen(key):
            logger.info(f"[GoCardless Webhook] Event {event_id} already processed, skipping")
            return {"status": "skipped", "reason": "already_processed"}

        try:
            handler = self._resource_handlers.get(resource_type)
            if handler is None:
                logger.info(f"[GoCardless Webhook] Unhandled resource type: {resource_type}")
                result = {"status": "unhandled", "resource_type": resource_type}
            else:
                result = handler(action, links, event)
        except Exception as e:
            logger.error(f"[GoCardless Webhook] Error processing {resource_type}.{action}: {e}")
            self._audit(
                "event_processing_error",
                {"eventId": event_id, "resourceType": resource_type, "action": action, "error": str(e)},
            )
            raise

        self.cache.add(key)
        self._audit(
            "event_processed",
            {
                "eventId": event_id,
                "resourceType": resource_type,
                "action": action,
                "links": links,
                "createdAt": event.get("created_at"),
                "result": result,
            },
        )
        return result

    # -----------------------
    # Subscriptions
    # -----------------------

    def _handle_subscription_event(self, action: str, links: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._subscription_actions.get(action)
        if handler is None:
            logger.info(f"[GoCardless Webhook] Unhandled subscription action: {action}")
            return {"status": "unhandled", "action": action, "subscriptionId": links.get("subscription")}
        return handler(action, links, event)

    def _subscription_created(self, action, links, event):
        subscription_id = self._require_link(links, "subscription")
        logger.info(f"[GoCardless Webhook] Subscription created: {subscription_id}")
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {
                "gocardlessId": subscription_id,
                "status": "active",
                "provider": PROVIDER,
                "createdAt": _parse_created_at(event.get("created_at")),
                "updatedAt": _utcnow(),
                "eventData": event,
            },
        )
        return {"status": "subscription_created", "subscriptionId": subscription_id}

    def _subscription_payment_created(self, action, links, event):
        subscription_id = self._require_link(links, "subscription")
        logger.info(f"[GoCardless Webhook] Subscription payment created: {subscription_id}")
        self.db.collection(PAYMENT_LOGS_COLLECTION).add(
            {
                "subscriptionId": subscription_id,
                "type": "payment_created",
                "timestamp": _utcnow(),
                "eventData": event,
            }
        )
        return {"status": "payment_logged", "subscriptionId": subscription_id}

    def _subscription_amended(self, action, links, event):
        subscription_id = self._require_link(links, "subscription")
        logger.info(f"[GoCardless Webhook] Subscription amended: {subscription_id}")
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {"status": "amended", "updatedAt": _utcnow(), "lastAmendment": event},
        )
        return {"status": "subscription_amended", "subscriptionId": subscription_id}

    def _subscription_cancelled(self, action, links, event):
        subscription_id = self._require_link(links, "subscription")
        logger.info(f"[GoCardless Webhook] Subscription cancelled: {subscription_id}")
        details = event.get("details") or {}
        now = _utcnow()
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {
                "status": "cancelled",
                "cancelledAt": now,
                "updatedAt": now,
                "cancellationReason": details.get("reason_code") or "unknown",
            },
        )
        return {"status": "subscription_cancelled", "subscriptionId": subscription_id}

    def _subscription_finished(self, action, links, event):
        subscription_id = self._require_link(links, "subscription")
        logger.info(f"[GoCardless Webhook] Subscription finished: {subscription_id}")
        now = _utcnow()
        self._upsert(
            SUBSCRIPTIONS_COLLECTION,
            subscription_id,
            {"status": "finished", "finishedAt": now, "updatedAt": now},
        )
        return {"status": "subscription_finished", "subscriptionId": subscription_id}

    # -----------------------
    # Payments / mandates / customers
    # -----------------------

    def _handle_payment_event(self, action, links, event):
        payment_id = links.get("payment")
        if action not in PAYMENT_ACTIONS:
            logger.info(f"[GoCardless Webhook] Unhandled payment action: {action}")
            return {"status": "unhandled", "action": action, "paymentId": payment_id}

        payment_id = self._require_link(links, "payment")
        logger.info(f"[GoCardless Webhook] Payment {action}: {payment_id}")
        self._upsert(
            PAYMENTS_COLLECTION,
            payment_id,
            {
                "gocardlessId": payment_id,
                "status": action,
                "subscriptionId": links.get("subscription"),
                "provider": PROVIDER,
                "updatedAt": _utcnow(),
                "lastEvent": event,
            },
        )
        return {"status": f"payment_{action}", "paymentId": payment_id}

    def _handle_mandate_event(self, action, links, event):
        mandate_id = links.get("mandate")
        if action not in MANDATE_ACTIONS:
            logger.info(f"[GoCardless Webhook] Unhandled mandate action: {action}")
            return {"status": "unhandled", "action": action, "mandateId": mandate_id}

        mandate_id = self._require_link(links, "mandate")
        logger.info(f"[GoCardless Webhook] Mandate {action}: {mandate_id}")
        self._upsert(
            MANDATES_COLLECTION,
            mandate_id,
            {
                "gocardlessId": mandate_id,
                "status": action,
                "customerId": links.get("customer"),
                "provider": PROVIDER,
                "updatedAt": _utcnow(),
                "lastEvent": event,
            },
        )
        return {"status": f"mandate_{action}", "mandateId": mandate_id}

    def _handle_customer_event(self, action, links, event):
        customer_id = links.get("customer")
        if action not in CUSTOMER_ACTIONS:
            logger.info(f"[GoCardless Webhook] Unhandled customer action: {action}")
            return {"status": "unhandled", "action": action, "customerId": customer_id}

        customer_id = self._require_link(links, "customer")
        logger.info(f"[GoCardless Webhook] Customer {action}: {customer_id}")
        self._upsert(
            CUSTOMERS_COLLECTION,
            customer_id,
            {
                "gocardlessId": customer_id,
                "provider": PROVIDER,
                "status": action,
                "updatedAt": _utcnow(),
                "lastEvent": event,
            },
        )
        return {"status": f"customer_{action}", "customerId": customer_id}

    # -----------------------
    # Helpers
    # -----------------------

    def _require_link(self, links: Dict[str, Any], name: str) -> str:
        value = links.get(name)
        if not value:
            raise ValueError(f"Event is missing links.{name}")
        return str(value)

    def _upsert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.db.collection(collection).document(doc_id).set(data, merge=True)

    def _audit(self, event_type: str, data: Dict[str, Any]) -> None:
        record_webhook_log(self.db, event_type, data, source=SOURCE)

    def _elapsed_ms(self, start: float) -> int:
        return int((time.monotonic() - start) * 1000)
