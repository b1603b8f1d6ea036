# classes/plans.py

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import commentjson
from pydantic import BaseModel, Field

from classes.google_helpers import get_secret

DEFAULT_PLANS_PATH = Path(__file__).resolve().parent.parent / "config" / "plans.jsonc"


class Plan(BaseModel):
    id: str
    name: str
    gocardless_name: str
    description: str
    price: Optional[int] = None
    currency: str = "GBP"
    interval_unit: str = "monthly"
    interval: int = 1
    item_limit: Optional[int] = None
    stripe_price_env: Optional[str] = None
    self_serve: bool = True
    features: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)

    @property
    def stripe_price_id(self) -> Optional[str]:
        if not self.stripe_price_env:
            return None
        return get_secret(self.stripe_price_env)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "interval": self.interval_unit,
            "features": self.features,
            "limitations": self.limitations,
            "stripePriceId": self.stripe_price_id,
            "itemLimit": self.item_limit,
        }

    def gocardless_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.gocardless_name,
            "amount": self.price,
            "currency": self.currency,
            "interval_unit": self.interval_unit,
            "interval": self.interval,
            "description": self.description,
        }


def _load_plans_config() -> Dict[str, Any]:
    """
    Load plan definitions from a JSON-with-comments file.
    Fails fast if the file or required top-level keys are missing.
    """
    cfg_path = Path(os.getenv("PLANS_CONFIG_PATH") or DEFAULT_PLANS_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Plans config file not found at '{cfg_path}'. ")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data.get("plans"), dict) or not data["plans"]:
        raise ValueError("Plans config missing or invalid key: plans")

    return data


_PLANS_CONFIG = _load_plans_config()
PLANS: Dict[str, Plan] = {pid: Plan(**raw) for pid, raw in _PLANS_CONFIG["plans"].items()}
TRIAL_DAYS: int = int(_PLANS_CONFIG.get("trial_days", 14))
SALES_CONTACT_EMAIL: str = _PLANS_CONFIG.get("sales_contact_email", "sales@allerq.com")


def get_plan(plan_id: Optional[str]) -> Optional[Plan]:
    if not plan_id:
        return None
    return PLANS.get(plan_id)


def list_plans() -> List[Plan]:
    return list(PLANS.values())
