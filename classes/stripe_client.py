# classes/stripe_client.py

from typing import Any, Dict, Optional

import stripe

from classes.google_helpers import get_secret, logger


class StripeNotConfigured(Exception):
    pass


class StripeGateway:
    """
    Customer + subscription checkout on Stripe.
    The API key is passed per call so no global stripe.api_key is mutated.
    """

    def __init__(self, api_key: Optional[str] = None, sdk: Any = stripe):
        self._api_key = api_key
        self._sdk = sdk

    def _key(self) -> str:
        key = self._api_key or get_secret("STRIPE_SECRET_KEY")
        if not key:
            raise StripeNotConfigured("Stripe not configured")
        return key

    def create_customer(self, *, email: Optional[str], name: Optional[str], metadata: Dict[str, str]):
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = self._sdk.Customer.create(api_key=self._key(), **params)
        logger.info(f"[Stripe] Customer created: {customer['id']}")
        return customer

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        trial_period_days: Optional[int] = None,
    ):
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days
        return self._sdk.checkout.Session.create(
            api_key=self._key(),
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data=subscription_data,
        )
