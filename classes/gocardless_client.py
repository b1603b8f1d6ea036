# classes/gocardless_client.py

import hashlib
import hmac
import secrets
from datetime import date, timedelta
from typing import Any, Dict, Optional

import gocardless_pro

from classes.google_helpers import GOCARDLESS_ENVIRONMENT, get_secret, logger


class GoCardlessNotConfigured(Exception):
    pass


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    HMAC-SHA256 of the raw body, hex-encoded, compared in constant time.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, (signature or "").strip())


def generate_session_token() -> str:
    return secrets.token_hex(32)


def trial_start_date(trial_days: int, today: Optional[date] = None) -> str:
    """First charge date (ISO yyyy-mm-dd) once the trial is over."""
    return ((today or date.today()) + timedelta(days=trial_days)).isoformat()


class GoCardlessGateway:
    """
    Thin wrapper over the gocardless_pro client.
    Raises GoCardlessNotConfigured when no access token is available.
    """

    def __init__(self, client: Any = None, access_token: Optional[str] = None, environment: Optional[str] = None):
        self._client = client
        self._access_token = access_token
        self._environment = environment or GOCARDLESS_ENVIRONMENT

    def _get_client(self):
        if self._client is None:
            token = self._access_token or get_secret("GOCARDLESS_ACCESS_TOKEN")
            if not token:
                raise GoCardlessNotConfigured("GoCardless not configured")
            logger.info(f"[GoCardless] Creating client environment={self._environment}")
            self._client = gocardless_pro.Client(access_token=token, environment=self._environment)
        return self._client

    def create_redirect_flow(
        self,
        *,
        description: str,
        session_token: str,
        success_redirect_url: str,
        prefilled_customer: Optional[Dict[str, Any]] = None,
    ):
        params: Dict[str, Any] = {
            "description": description,
            "session_token": session_token,
            "success_redirect_url": success_redirect_url,
        }
        if prefilled_customer:
            params["prefilled_customer"] = {k: v for k, v in prefilled_customer.items() if v}
        return self._get_client().redirect_flows.create(params=params)

    def complete_redirect_flow(self, redirect_flow_id: str, session_token: str):
        return self._get_client().redirect_flows.complete(
            redirect_flow_id, params={"session_token": session_token}
        )

    def create_subscription(
        self,
        *,
        amount: int,
        currency: str,
        name: str,
        interval_unit: str,
        interval: int,
        mandate_id: str,
        metadata: Optional[Dict[str, str]] = None,
        start_date: Optional[str] = None,
    ):
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "name": name,
            "interval_unit": interval_unit,
            "interval": interval,
            "links": {"mandate": mandate_id},
            "metadata": metadata or {},
        }
        if start_date:
            params["start_date"] = start_date
        return self._get_client().subscriptions.create(params=params)
