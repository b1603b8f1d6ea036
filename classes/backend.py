# classes/backend.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from classes.allergen_catalog import region_for_country
from classes.allergen_detection import AllergenDetectionService, summarize_confidence
from classes.entities import AIProcessingRequest, MenuItemInput, MenuItemTag, ProcessedItem
from classes.errors import BackendError
from classes.google_helpers import logger

RESTAURANTS_COLLECTION = "restaurants"
MENUS_COLLECTION = "menus"

FIXED_RECOMMENDATIONS = [
    "Review all AI-generated tags for accuracy",
    "Pay special attention to items with confidence scores below 80%",
    "Consider cross-contamination risks in your kitchen",
]


class Backend:
    def __init__(self, db, detection_service: Optional[AllergenDetectionService] = None):
        self.db = db
        self.detection = detection_service or AllergenDetectionService()

    # -----------------------
    # Lookups
    # -----------------------

    def _load_owned_restaurant(self, restaurant_id: str, user_id: str) -> Dict[str, Any]:
        snap = self.db.collection(RESTAURANTS_COLLECTION).document(restaurant_id).get()
        data = snap.to_dict() if snap.exists else None
        if not data or data.get("ownerId") != user_id:
            raise BackendError(404, "Restaurant not found or access denied")
        return data

    def _load_menu(self, menu_id: str, restaurant_id: str) -> Dict[str, Any]:
        snap = self.db.collection(MENUS_COLLECTION).document(menu_id).get()
        data = snap.to_dict() if snap.exists else None
        if not data or data.get("restaurantId") != restaurant_id:
            raise BackendError(404, "Menu not found")
        return data

    def _parse_items(self, payload: Dict[str, Any]) -> List[MenuItemInput]:
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            raise BackendError(400, "Items array is required and must not be empty")

        parsed: List[MenuItemInput] = []
        for item in items:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str) or not name.strip():
                raise BackendError(400, "Each item must have a valid name")
            try:
                parsed.append(MenuItemInput(**item))
            except ValidationError as e:
                raise BackendError(400, f"Invalid menu item: {e.errors()[0].get('msg')}") from e
        return parsed

    # -----------------------
    # Handlers
    # -----------------------

    def handle_ai_process(self, user: Dict[str, Any], restaurant_id: str, menu_id: str, payload: Any) -> Dict[str, Any]:
        """
        Tag a batch of menu items with allergens/dietary info for the restaurant's region.

        Raises BackendError with the HTTP status to return (404 ownership, 400 input,
        500 AI failure with the untagged items in the body).
        """
        user_id = user["uid"]
        logger.info(f"[AI Processing] Processing menu {menu_id} for restaurant {restaurant_id}")

        restaurant = self._load_owned_restaurant(restaurant_id, user_id)
        self._load_menu(menu_id, restaurant_id)

        if not isinstance(payload, dict):
            raise BackendError(400, "Items array is required and must not be empty")
        items = self._parse_items(payload)
        options = payload.get("options") if isinstance(payload.get("options"), dict) else {}
        custom_prompt = options.get("customPrompt") or payload.get("customPrompt")

        location = restaurant.get("location")
        country = location.get("country") if isinstance(location, dict) else None
        region = region_for_country(country)
        logger.info(f"[AI Processing] Using region: {region} for restaurant in {country or 'Unknown'}")

        ai_request = AIProcessingRequest(
            region=region,
            items=items,
            custom_prompt=custom_prompt,
            menu_id=menu_id,
            restaurant_id=restaurant_id,
        )
        ai_response = self.detection.process_menu_items(ai_request)
        processed_at = datetime.now(timezone.utc)

        if not ai_response.success:
            self._record_menu_status(menu_id, processed_at, error="; ".join(ai_response.errors) or "AI processing failed")
            raise BackendError(
                500,
                {
                    "success": False,
                    "error": "AI processing failed",
                    "details": ai_response.errors,
                    "warnings": ai_response.warnings,
                    "processedItems": [
                        self._to_menu_item(item, user_id, processed_at) for item in ai_response.processed_items
                    ],
                },
            )

        compliance = self.detection.validate_regional_compliance(ai_response.processed_items, region)
        processed_items = [
            self._to_menu_item(item, user_id, processed_at) for item in ai_response.processed_items
        ]
        self._record_menu_status(menu_id, processed_at)

        warnings = list(ai_response.warnings)
        if not compliance.compliant:
            warnings.extend(compliance.issues)

        recommendations = list(FIXED_RECOMMENDATIONS)
        if compliance.compliant:
            recommendations.append(f"All items appear compliant with {region} regulations")
        else:
            recommendations.append(f"{len(compliance.issues)} potential compliance issues detected")

        logger.info(
            f"[AI Processing] Successfully processed {len(processed_items)} items with {len(warnings)} warnings"
        )
        return {
            "success": True,
            "processedItems": processed_items,
            "region": region,
            "compliance": compliance.model_dump(),
            "aiMetadata": {
                "modelUsed": ai_response.model_used,
                "processingTime": ai_response.processing_time,
                "processedAt": processed_at.isoformat(),
                "itemCount": len(items),
                "usage": ai_response.usage,
            },
            "warnings": warnings,
            "recommendations": recommendations,
        }

    def _to_menu_item(self, item: ProcessedItem, user_id: str, added_at: datetime) -> Dict[str, Any]:
        stamp = added_at.isoformat()
        allergen_tags = [
            MenuItemTag(type="allergen", value=t.tag, confidence=t.confidence, source="ai", addedAt=stamp, addedBy=user_id).model_dump()
            for t in item.allergens
        ]
        dietary_tags = [
            MenuItemTag(type="dietary", value=t.tag, confidence=t.confidence, source="ai", addedAt=stamp, addedBy=user_id).model_dump()
            for t in item.dietary
        ]
        return {
            "name": item.name,
            "allergenTags": allergen_tags,
            "dietaryTags": dietary_tags,
            "suggestions": item.suggestions,
            "needsReview": item.needs_review,
            "aiConfidence": summarize_confidence(item),
        }

    def _record_menu_status(self, menu_id: str, processed_at: datetime, error: Optional[str] = None) -> None:
        update = {
            "aiProcessed": error is None,
            "aiProcessingStatus": "failed" if error else "completed",
            "lastAiProcessing": processed_at,
            "aiProcessingError": error,
        }
        try:
            self.db.collection(MENUS_COLLECTION).document(menu_id).set(update, merge=True)
        except Exception as e:
            # the tagging result is still returned to the caller
            logger.error(f"[AI Processing] Failed to update menu {menu_id} status: {e}")
