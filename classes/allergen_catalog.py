# classes/allergen_catalog.py
from typing import Dict, List, Optional, Tuple

from classes.entities import AllergenInfo, DietaryInfo, RegionalAllergenConfig, Regulation


def _allergens(region: str, pairs: List[Tuple[str, str]]) -> List[AllergenInfo]:
    return [AllergenInfo(id=aid, name=name, region=region, mandatory=True) for aid, name in pairs]


REGIONAL_ALLERGENS: Dict[str, RegionalAllergenConfig] = {
    "EU": RegionalAllergenConfig(
        region="EU",
        name="European Union (Natasha's Law)",
        mandatory_allergens=_allergens("EU", [
            ("gluten", "Cereals containing gluten"),
            ("crustaceans", "Crustaceans"),
            ("eggs", "Eggs"),
            ("fish", "Fish"),
            ("peanuts", "Peanuts"),
            ("soybeans", "Soybeans"),
            ("milk", "Milk"),
            ("nuts", "Tree nuts"),
            ("celery", "Celery"),
            ("mustard", "Mustard"),
            ("sesame", "Sesame seeds"),
            ("sulphites", "Sulphur dioxide and sulphites"),
            ("lupin", "Lupin"),
            ("molluscs", "Molluscs"),
        ]),
        regulations=[
            Regulation(
                name="Natasha's Law",
                description="UK food labeling requirements",
                url="https://www.food.gov.uk/business-guidance/allergen-guidance-for-food-businesses",
            ),
        ],
    ),
    "US": RegionalAllergenConfig(
        region="US",
        name="United States (FDA)",
        mandatory_allergens=_allergens("US", [
            ("milk", "Milk"),
            ("eggs", "Eggs"),
            ("fish", "Fish"),
            ("shellfish", "Shellfish"),
            ("tree_nuts", "Tree nuts"),
            ("peanuts", "Peanuts"),
            ("wheat", "Wheat"),
            ("soybeans", "Soybeans"),
            ("sesame", "Sesame"),
        ]),
        regulations=[
            Regulation(
                name="FDA Food Allergen Labeling",
                description="FDA requirements for allergen labeling",
                url="https://www.fda.gov/food/food-allergensgluten-free/food-allergen-labeling-and-consumer-protection-act-falcpa",
            ),
        ],
    ),
    "CA": RegionalAllergenConfig(
        region="CA",
        name="Canada (Health Canada priority allergens)",
        mandatory_allergens=_allergens("CA", [
            ("eggs", "Eggs"),
            ("milk", "Milk"),
            ("mustard", "Mustard"),
            ("peanuts", "Peanuts"),
            ("shellfish", "Crustaceans and molluscs (shellfish)"),
            ("fish", "Fish"),
            ("sesame", "Sesame seeds"),
            ("soybeans", "Soy"),
            ("sulphites", "Sulphites"),
            ("tree_nuts", "Tree nuts"),
            ("gluten", "Wheat, triticale and other gluten sources"),
        ]),
        regulations=[
            Regulation(
                name="Food and Drug Regulations (B.01.010.1)",
                description="Health Canada priority food allergen labelling",
                url="https://www.canada.ca/en/health-canada/services/food-nutrition/food-safety/food-allergies-intolerances/food-allergies.html",
            ),
        ],
    ),
    "ASIA": RegionalAllergenConfig(
        region="ASIA",
        name="Asia-Pacific (Codex Alimentarius baseline)",
        mandatory_allergens=_allergens("ASIA", [
            ("gluten", "Cereals containing gluten"),
            ("shellfish", "Crustaceans (shellfish)"),
            ("eggs", "Eggs"),
            ("fish", "Fish"),
            ("peanuts", "Peanuts"),
            ("soybeans", "Soybeans"),
            ("milk", "Milk"),
            ("tree_nuts", "Tree nuts"),
            ("sesame", "Sesame"),
            ("sulphites", "Sulphites"),
        ]),
        regulations=[
            Regulation(
                name="Codex General Standard for the Labelling of Prepackaged Foods",
                description="Codex list of foods and ingredients known to cause hypersensitivity",
            ),
        ],
    ),
}

DIETARY_OPTIONS: List[DietaryInfo] = [
    DietaryInfo(id="vegetarian", name="Vegetarian", description="No meat or fish", icon="🥬"),
    DietaryInfo(id="vegan", name="Vegan", description="No animal products", icon="🌱"),
    DietaryInfo(id="gluten_free", name="Gluten-Free", description="No gluten-containing ingredients", icon="🌾"),
    DietaryInfo(id="dairy_free", name="Dairy-Free", description="No dairy products", icon="🥛"),
    DietaryInfo(id="halal", name="Halal", description="Prepared according to Islamic law", icon="☪️"),
    DietaryInfo(id="kosher", name="Kosher", description="Prepared according to Jewish law", icon="✡️"),
    DietaryInfo(id="keto", name="Keto-Friendly", description="Low carb, high fat", icon="🥑"),
    DietaryInfo(id="low_sodium", name="Low Sodium", description="Reduced sodium content", icon="🧂"),
    DietaryInfo(id="spicy", name="Spicy", description="Contains spicy ingredients", icon="🌶️"),
    DietaryInfo(id="nut_free", name="Nut-Free", description="No nuts or nut products", icon="🚫"),
]

# (keywords found in name/description, allergen word expected in a tag)
KEYWORD_CHECKS: List[Tuple[Tuple[str, ...], str]] = [
    (("bread", "pasta", "wheat", "flour"), "gluten"),
    (("cheese", "milk", "cream", "butter"), "milk"),
    (("egg", "mayo", "mayonnaise"), "eggs"),
    (("nut", "almond", "walnut", "pecan"), "nuts"),
    (("peanut",), "peanuts"),
    (("fish", "salmon", "tuna", "cod"), "fish"),
    (("shrimp", "crab", "lobster", "shellfish"), "shellfish"),
]

ASIA_COUNTRIES = {"China", "Japan", "South Korea", "India", "Thailand", "Singapore"}


def get_regional_config(region: str) -> Optional[RegionalAllergenConfig]:
    return REGIONAL_ALLERGENS.get(region)


def region_for_country(country: Optional[str]) -> str:
    """
    Map a restaurant's country to the allergen region used for tagging.
    Anything unrecognised (or missing) falls back to EU rules.
    """
    if not isinstance(country, str) or not country:
        return "EU"
    if country in ("US", "United States"):
        return "US"
    if country in ("CA", "Canada"):
        return "CA"
    if country in ASIA_COUNTRIES:
        return "ASIA"
    return "EU"
