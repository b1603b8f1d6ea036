# classes/entities.py
from typing import Dict, List, Literal, Optional, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

Region: TypeAlias = Literal["EU", "US", "CA", "ASIA"]
Timestamp: TypeAlias = str


class AllergenInfo(BaseModel):
    id: str
    name: str
    region: Region
    mandatory: bool = True
    description: Optional[str] = None


class Regulation(BaseModel):
    name: str
    description: str
    url: Optional[str] = None


class RegionalAllergenConfig(BaseModel):
    region: Region
    name: str
    mandatory_allergens: List[AllergenInfo]
    optional_allergens: List[AllergenInfo] = Field(default_factory=list)
    regulations: List[Regulation] = Field(default_factory=list)


class DietaryInfo(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None


class MenuItemInput(BaseModel):
    # extra keys (price, category, ...) ride along untouched
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    ingredients: Optional[str] = None


class AIProcessingRequest(BaseModel):
    region: str
    items: List[MenuItemInput]
    custom_prompt: Optional[str] = None
    menu_id: Optional[str] = None
    restaurant_id: Optional[str] = None


class TagResult(BaseModel):
    tag: str
    confidence: float
    reasoning: Optional[str] = None


class ProcessedItem(MenuItemInput):
    allergens: List[TagResult] = Field(default_factory=list)
    dietary: List[TagResult] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    needs_review: bool = False


class AIProcessingResponse(BaseModel):
    success: bool
    processed_items: List[ProcessedItem] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    processing_time: int = 0
    model_used: str
    usage: Optional[Dict[str, int]] = None


class ComplianceReport(BaseModel):
    compliant: bool
    issues: List[str] = Field(default_factory=list)


class MenuItemTag(BaseModel):
    """Shape of an allergen/dietary tag as stored on a menu item document."""

    type: Literal["allergen", "dietary"]
    value: str
    confidence: Optional[float] = None
    source: Literal["ai", "manual"] = "ai"
    addedAt: Timestamp
    addedBy: Optional[str] = None
