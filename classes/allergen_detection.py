# classes/allergen_detection.py

import json
import time
from typing import Any, Dict, List, Optional

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from classes.allergen_catalog import DIETARY_OPTIONS, KEYWORD_CHECKS, get_regional_config
from classes.allergen_prompts import ALLERGEN_SYSTEM_PROMPT, ALLERGEN_USER_PROMPT, CUSTOM_INSTRUCTIONS_BLOCK
from classes.base_utils import BaseUtils
from classes.entities import (
    AIProcessingRequest,
    AIProcessingResponse,
    ComplianceReport,
    MenuItemInput,
    ProcessedItem,
    RegionalAllergenConfig,
    TagResult,
)
from classes.google_helpers import OPENAI_MODEL, logger
from classes.llm_client import ChatLlmClient, EmptyCompletionError

CONFIDENCE_FLOOR = 50
REVIEW_THRESHOLD = 70

FALLBACK_MODEL = "fallback"
FALLBACK_SUGGESTION = "AI service not available - manual tagging required"
FALLBACK_WARNING = "AI allergen detection is not available - all items require manual review"
FAILED_SUGGESTION = "AI processing failed - manual review required"
FAILED_WARNING = "AI allergen detection failed - all items require manual review"
MISSING_ITEM_SUGGESTION = "AI returned no result for this item - manual review required"


class AllergenDetectionError(Exception):
    pass


class AllergenDetectionService(BaseUtils):
    """
    One chat completion per batch of menu items.

    The model is asked for strict JSON; its answer is aligned back onto the
    input items by position, low-confidence tags are dropped, and borderline
    ones mark the item for manual review. Any provider or parsing failure
    fails the whole batch: every item comes back untagged.
    """

    def __init__(self, chat_llm: Optional[ChatLlmClient] = None, model_name: Optional[str] = None):
        self._chat_llm = chat_llm
        self.model_name = model_name or OPENAI_MODEL

    def _get_chat_llm(self) -> Optional[ChatLlmClient]:
        if self._chat_llm is None:
            self._chat_llm = self._build_chat_llm(self.model_name)
        return self._chat_llm

    # -----------------------
    # Entry point
    # -----------------------

    def process_menu_items(self, request: AIProcessingRequest) -> AIProcessingResponse:
        logger.info(f"[AI Allergen Detection] Processing {len(request.items)} items for region: {request.region}")

        chat_llm = self._get_chat_llm()
        if chat_llm is None:
            return self._fallback_response(request)

        model_used = getattr(chat_llm, "model_name", self.model_name)
        regional_config = get_regional_config(request.region)
        if regional_config is None:
            return AIProcessingResponse(
                success=False,
                processed_items=[],
                errors=[f"Unsupported region: {request.region}"],
                model_used=model_used,
            )

        start = time.monotonic()
        try:
            messages = self.build_messages(request, regional_config)
            raw = chat_llm.invoke_json(messages, temperature=0.1, max_tokens=4000)
            processed_items = self.parse_ai_response(raw, request.items)
        except (openai.OpenAIError, EmptyCompletionError, AllergenDetectionError) as e:
            logger.error(f"[AI Allergen Detection] Error: {e}")
            return self._failed_response(request, str(e), model_used, start)

        usage = chat_llm.get_accrued_usage() if hasattr(chat_llm, "get_accrued_usage") else None
        return AIProcessingResponse(
            success=True,
            processed_items=processed_items,
            warnings=self.generate_warnings(processed_items),
            errors=[],
            processing_time=self._elapsed_ms(start),
            model_used=model_used,
            usage=usage or None,
        )

    # -----------------------
    # Prompt
    # -----------------------

    def build_messages(
        self,
        request: AIProcessingRequest,
        regional_config: RegionalAllergenConfig,
    ) -> List[BaseMessage]:
        allergen_list = ", ".join(a.name for a in regional_config.mandatory_allergens)
        dietary_list = ", ".join(d.name for d in DIETARY_OPTIONS)

        system_prompt = self.unsafe_string_format(
            ALLERGEN_SYSTEM_PROMPT,
            region=request.region,
            region_name=regional_config.name,
            allergen_list=allergen_list,
            dietary_list=dietary_list,
        )

        item_lines = "\n".join(
            f"{i + 1}. {self._describe_item(item)}" for i, item in enumerate(request.items)
        )
        custom_instructions = ""
        if request.custom_prompt:
            custom_instructions = self.unsafe_string_format(
                CUSTOM_INSTRUCTIONS_BLOCK, custom_prompt=request.custom_prompt
            )
        user_prompt = self.unsafe_string_format(
            ALLERGEN_USER_PROMPT,
            item_lines=item_lines,
            custom_instructions=custom_instructions,
        ).strip()

        return [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]

    def _describe_item(self, item: MenuItemInput) -> str:
        line = item.name
        if item.description:
            line += f" - {item.description}"
        if item.ingredients:
            line += f" (Ingredients: {item.ingredients})"
        return line

    # -----------------------
    # Response parsing
    # -----------------------

    def parse_ai_response(self, raw: str, original_items: List[MenuItemInput]) -> List[ProcessedItem]:
        try:
            parsed = json.loads(self.clean_triple_backticks(raw))
        except json.JSONDecodeError as e:
            raise AllergenDetectionError(f"Invalid AI response JSON: {e}") from e

        if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
            raise AllergenDetectionError("Invalid AI response format")

        ai_items = parsed["items"]
        if len(ai_items) != len(original_items):
            logger.info(
                f"[AI Allergen Detection] Model returned {len(ai_items)} items for {len(original_items)} inputs"
            )

        processed: List[ProcessedItem] = []
        for index, original in enumerate(original_items):
            ai_item = ai_items[index] if index < len(ai_items) else None
            if not isinstance(ai_item, dict):
                processed.append(self._untagged_item(original, MISSING_ITEM_SUGGESTION, needs_review=True))
                continue

            allergens = self._filter_tags(ai_item.get("allergens"))
            dietary = self._filter_tags(ai_item.get("dietary"))
            raw_suggestions = ai_item.get("suggestions")
            if not isinstance(raw_suggestions, list):
                raw_suggestions = []
            suggestions = [self._coerce_field_to_str(s) for s in raw_suggestions if s]

            processed.append(
                self._processed_item(
                    original,
                    allergens=allergens,
                    dietary=dietary,
                    suggestions=suggestions,
                    needs_review=any(t.confidence < REVIEW_THRESHOLD for t in allergens + dietary),
                )
            )
        return processed

    def _processed_item(self, item: MenuItemInput, **tagging: Any) -> ProcessedItem:
        # original fields (extras included) survive; tagging fields overwrite
        data = item.model_dump()
        data.update(tagging)
        return ProcessedItem(**data)

    def _filter_tags(self, raw_tags: Any) -> List[TagResult]:
        if not isinstance(raw_tags, list):
            return []
        out: List[TagResult] = []
        for raw in raw_tags:
            if not isinstance(raw, dict):
                continue
            tag = self._coerce_field_to_str(raw.get("tag"))
            confidence = self._coerce_confidence(raw.get("confidence"))
            if not tag or confidence is None or confidence < CONFIDENCE_FLOOR:
                continue
            reasoning = raw.get("reasoning")
            out.append(
                TagResult(
                    tag=tag,
                    confidence=confidence,
                    reasoning=self._coerce_field_to_str(reasoning) if reasoning is not None else None,
                )
            )
        return out

    def generate_warnings(self, items: List[ProcessedItem]) -> List[str]:
        warnings: List[str] = []

        without_allergens = sum(1 for item in items if not item.allergens)
        if without_allergens:
            warnings.append(f"{without_allergens} items have no allergen tags - please review manually")

        low_confidence = sum(
            1 for item in items
            if any(t.confidence < REVIEW_THRESHOLD for t in item.allergens + item.dietary)
        )
        if low_confidence:
            warnings.append(f"{low_confidence} items have low-confidence tags - manual review recommended")

        return warnings

    # -----------------------
    # Degraded responses
    # -----------------------

    def _untagged_item(self, item: MenuItemInput, suggestion: str, needs_review: bool = True) -> ProcessedItem:
        return self._processed_item(
            item,
            allergens=[],
            dietary=[],
            suggestions=[suggestion],
            needs_review=needs_review,
        )

    def _fallback_response(self, request: AIProcessingRequest) -> AIProcessingResponse:
        logger.info("[AI Allergen Detection] Using fallback mode - no AI processing")
        return AIProcessingResponse(
            success=False,
            processed_items=[self._untagged_item(item, FALLBACK_SUGGESTION) for item in request.items],
            warnings=[FALLBACK_WARNING],
            errors=["OpenAI API key not configured"],
            processing_time=0,
            model_used=FALLBACK_MODEL,
        )

    def _failed_response(
        self,
        request: AIProcessingRequest,
        error: str,
        model_used: str,
        start: float,
    ) -> AIProcessingResponse:
        return AIProcessingResponse(
            success=False,
            processed_items=[self._untagged_item(item, FAILED_SUGGESTION) for item in request.items],
            warnings=[FAILED_WARNING],
            errors=[error],
            processing_time=self._elapsed_ms(start),
            model_used=model_used,
        )

    def _elapsed_ms(self, start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    # -----------------------
    # Compliance
    # -----------------------

    def validate_regional_compliance(self, items: List[ProcessedItem], region: str) -> ComplianceReport:
        """
        Keyword pass over item name + description, independent of the model.
        Flags items whose text suggests an allergen no tag mentions.
        """
        if get_regional_config(region) is None:
            return ComplianceReport(compliant=False, issues=[f"Unknown region: {region}"])

        issues: List[str] = []
        for item in items:
            text_name = (item.name or "").lower()
            text_description = (item.description or "").lower()
            tags = [t.tag.lower() for t in item.allergens]

            for keywords, allergen in KEYWORD_CHECKS:
                has_keyword = any(k in text_name or k in text_description for k in keywords)
                if not has_keyword:
                    continue
                if not any(allergen in tag for tag in tags):
                    issues.append(f'Item "{item.name}" may contain {allergen} but is not tagged')

        return ComplianceReport(compliant=not issues, issues=issues)


def summarize_confidence(item: ProcessedItem) -> Dict[str, int]:
    """
    Rounded mean confidence over all tags, allergen tags and dietary tags (0 when empty).
    """
    def _mean(tags: List[TagResult]) -> int:
        if not tags:
            return 0
        return round(sum(t.confidence for t in tags) / len(tags))

    return {
        "overall": _mean(item.allergens + item.dietary),
        "allergens": _mean(item.allergens),
        "dietary": _mean(item.dietary),
    }
