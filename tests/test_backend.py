import pytest

from classes.allergen_detection import AllergenDetectionService
from classes.backend import Backend
from classes.errors import BackendError

USER = {"uid": "owner-1", "email": "owner@example.com", "name": "Owner"}

AI_ANSWER = {
    "items": [
        {
            "allergens": [
                {"tag": "gluten", "confidence": 95, "reasoning": "bread"},
                {"tag": "milk", "confidence": 85, "reasoning": "cheese"},
            ],
            "dietary": [{"tag": "vegetarian", "confidence": 90}],
            "suggestions": [],
        }
    ]
}


@pytest.fixture
def seeded_db(db):
    db.collection("restaurants").document("rest-1").set(
        {"ownerId": "owner-1", "name": "Bistro", "location": {"country": "United Kingdom"}}
    )
    db.collection("restaurants").document("rest-us").set(
        {"ownerId": "owner-1", "name": "Diner", "location": {"country": "US"}}
    )
    db.collection("menus").document("menu-1").set({"restaurantId": "rest-1", "name": "Lunch"})
    db.collection("menus").document("menu-us").set({"restaurantId": "rest-us", "name": "Dinner"})
    return db


def _backend(db, llm=None):
    return Backend(db, detection_service=AllergenDetectionService(chat_llm=llm))


def _payload(**extra):
    payload = {"items": [{"name": "Cheese toastie", "description": "Sourdough bread with cheddar cheese"}]}
    payload.update(extra)
    return payload


def test_successful_processing(seeded_db, make_chat_llm):
    result = _backend(seeded_db, make_chat_llm(AI_ANSWER)).handle_ai_process(USER, "rest-1", "menu-1", _payload())

    assert result["success"] is True
    assert result["region"] == "EU"
    assert result["compliance"] == {"compliant": True, "issues": []}
    assert result["aiMetadata"]["modelUsed"] == "gpt-4o"
    assert result["aiMetadata"]["itemCount"] == 1
    assert result["aiMetadata"]["usage"]["total_tokens"] == 200
    assert result["warnings"] == []
    assert result["recommendations"][-1] == "All items appear compliant with EU regulations"

    [item] = result["processedItems"]
    assert item["name"] == "Cheese toastie"
    assert [t["value"] for t in item["allergenTags"]] == ["gluten", "milk"]
    tag = item["allergenTags"][0]
    assert tag["type"] == "allergen"
    assert tag["source"] == "ai"
    assert tag["addedBy"] == "owner-1"
    assert item["dietaryTags"][0]["type"] == "dietary"
    assert item["aiConfidence"] == {"overall": 90, "allergens": 90, "dietary": 90}
    assert item["needsReview"] is False

    menu = seeded_db.docs("menus")["menu-1"]
    assert menu["aiProcessed"] is True
    assert menu["aiProcessingStatus"] == "completed"
    assert menu["aiProcessingError"] is None


def test_region_follows_restaurant_country(seeded_db, make_chat_llm):
    llm = make_chat_llm(AI_ANSWER)
    result = _backend(seeded_db, llm).handle_ai_process(USER, "rest-us", "menu-us", _payload())
    assert result["region"] == "US"
    assert "REGION: US" in llm.fake.completions.calls[0]["messages"][0]["content"]


def test_non_dict_location_falls_back_to_eu(seeded_db, make_chat_llm):
    seeded_db.collection("restaurants").document("rest-1").set({"ownerId": "owner-1", "location": "London, UK"})
    result = _backend(seeded_db, make_chat_llm(AI_ANSWER)).handle_ai_process(USER, "rest-1", "menu-1", _payload())
    assert result["success"] is True
    assert result["region"] == "EU"


def test_non_finite_confidence_does_not_break_summary(seeded_db, make_chat_llm):
    raw = '{"items": [{"allergens": [{"tag": "gluten", "confidence": NaN}, {"tag": "milk", "confidence": 90}], "dietary": []}]}'
    result = _backend(seeded_db, make_chat_llm(raw)).handle_ai_process(USER, "rest-1", "menu-1", _payload())

    assert result["success"] is True
    [item] = result["processedItems"]
    assert [t["value"] for t in item["allergenTags"]] == ["milk"]
    assert item["aiConfidence"] == {"overall": 90, "allergens": 90, "dietary": 0}


def test_custom_prompt_from_options(seeded_db, make_chat_llm):
    llm = make_chat_llm(AI_ANSWER)
    _backend(seeded_db, llm).handle_ai_process(
        USER, "rest-1", "menu-1", _payload(options={"customPrompt": "Mark sourdough as gluten"})
    )
    assert "Additional instructions: Mark sourdough as gluten" in llm.fake.completions.calls[0]["messages"][1]["content"]


def test_compliance_issues_become_warnings(seeded_db, make_chat_llm):
    answer = {"items": [{"allergens": [{"tag": "gluten", "confidence": 95}], "dietary": []}]}
    result = _backend(seeded_db, make_chat_llm(answer)).handle_ai_process(USER, "rest-1", "menu-1", _payload())

    assert result["compliance"]["compliant"] is False
    assert 'Item "Cheese toastie" may contain milk but is not tagged' in result["warnings"]
    assert result["recommendations"][-1] == "1 potential compliance issues detected"


def test_foreign_restaurant_is_404(seeded_db, make_chat_llm):
    other = {"uid": "someone-else"}
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db, make_chat_llm(AI_ANSWER)).handle_ai_process(other, "rest-1", "menu-1", _payload())
    assert exc.value.status_code == 404
    assert exc.value.payload == {"error": "Restaurant not found or access denied"}


def test_missing_restaurant_is_404(seeded_db):
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db).handle_ai_process(USER, "nope", "menu-1", _payload())
    assert exc.value.status_code == 404


def test_menu_of_other_restaurant_is_404(seeded_db):
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db).handle_ai_process(USER, "rest-1", "menu-us", _payload())
    assert exc.value.payload == {"error": "Menu not found"}


@pytest.mark.parametrize(
    "payload, message",
    [
        ({}, "Items array is required and must not be empty"),
        ({"items": []}, "Items array is required and must not be empty"),
        ({"items": "pizza"}, "Items array is required and must not be empty"),
        ({"items": [{"name": "  "}]}, "Each item must have a valid name"),
        ({"items": [{"description": "no name"}]}, "Each item must have a valid name"),
        ({"items": ["pizza"]}, "Each item must have a valid name"),
    ],
)
def test_invalid_items_are_400(seeded_db, make_chat_llm, payload, message):
    llm = make_chat_llm(AI_ANSWER)
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db, llm).handle_ai_process(USER, "rest-1", "menu-1", payload)
    assert exc.value.status_code == 400
    assert exc.value.payload == {"error": message}
    assert llm.fake.completions.calls == []


def test_ai_failure_is_500_with_untagged_items(seeded_db, make_chat_llm):
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db, make_chat_llm("{broken")).handle_ai_process(USER, "rest-1", "menu-1", _payload())

    assert exc.value.status_code == 500
    body = exc.value.payload
    assert body["success"] is False
    assert body["error"] == "AI processing failed"
    assert len(body["details"]) == 1
    [item] = body["processedItems"]
    assert item["allergenTags"] == []
    assert item["needsReview"] is True

    menu = seeded_db.docs("menus")["menu-1"]
    assert menu["aiProcessingStatus"] == "failed"
    assert menu["aiProcessed"] is False


def test_fallback_without_key_is_500(seeded_db):
    with pytest.raises(BackendError) as exc:
        _backend(seeded_db).handle_ai_process(USER, "rest-1", "menu-1", _payload())
    assert exc.value.payload["details"] == ["OpenAI API key not configured"]


def test_menu_status_write_failure_does_not_fail_request(seeded_db, make_chat_llm):
    backend = _backend(seeded_db, make_chat_llm(AI_ANSWER))
    seeded_db.failing_collections.add("menus")
    result = backend.handle_ai_process(USER, "rest-1", "menu-1", _payload())
    assert result["success"] is True
