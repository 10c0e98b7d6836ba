from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

UNIT_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "g": {"unit_type": "weight", "unit_label": "g", "multiplier": 1},
    "gram": {"unit_type": "weight", "unit_label": "g", "multiplier": 1},
    "grams": {"unit_type": "weight", "unit_label": "g", "multiplier": 1},
    "kg": {"unit_type": "weight", "unit_label": "g", "multiplier": 1000},
    "kilogram": {"unit_type": "weight", "unit_label": "g", "multiplier": 1000},
    "kilograms": {"unit_type": "weight", "unit_label": "g", "multiplier": 1000},
    "mg": {"unit_type": "weight", "unit_label": "g", "multiplier": 0.001},
    "oz": {"unit_type": "weight", "unit_label": "g", "multiplier": 28.3495},
    "ounce": {"unit_type": "weight", "unit_label": "g", "multiplier": 28.3495},
    "ounces": {"unit_type": "weight", "unit_label": "g", "multiplier": 28.3495},
    "lb": {"unit_type": "weight", "unit_label": "g", "multiplier": 453.592},
    "lbs": {"unit_type": "weight", "unit_label": "g", "multiplier": 453.592},
    "pound": {"unit_type": "weight", "unit_label": "g", "multiplier": 453.592},
    "pounds": {"unit_type": "weight", "unit_label": "g", "multiplier": 453.592},
    "ml": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1},
    "milliliter": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1},
    "milliliters": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1},
    "millilitre": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1},
    "millilitres": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1},
    "l": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1000},
    "liter": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1000},
    "liters": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1000},
    "litre": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1000},
    "litres": {"unit_type": "volume", "unit_label": "ml", "multiplier": 1000},
    "tsp": {"unit_type": "volume", "unit_label": "ml", "multiplier": 5},
    "teaspoon": {"unit_type": "volume", "unit_label": "ml", "multiplier": 5},
    "teaspoons": {"unit_type": "volume", "unit_label": "ml", "multiplier": 5},
    "tbsp": {"unit_type": "volume", "unit_label": "ml", "multiplier": 15},
    "tablespoon": {"unit_type": "volume", "unit_label": "ml", "multiplier": 15},
    "tablespoons": {"unit_type": "volume", "unit_label": "ml", "multiplier": 15},
    "cup": {"unit_type": "volume", "unit_label": "ml", "multiplier": 250},
    "cups": {"unit_type": "volume", "unit_label": "ml", "multiplier": 250},
}

COUNT_UNITS = {
    "each", "ea", "x", "count", "unit", "units", "piece", "pieces", "pc", "pcs",
    "clove", "cloves", "slice", "slices", "can", "cans", "tin", "tins",
    "egg", "eggs", "whole", "medium", "large", "small", "pack", "packs", "pk",
    "packet", "packets", "bunch", "bunches", "loaf", "loaves", "bottle", "bottles",
    "jar", "jars", "stick", "sticks", "head", "heads", "fillet", "fillets",
}

STRIP_DESCRIPTORS = sorted(
    [
        "low fat", "reduced fat", "full fat", "fat free", "non fat", "lite", "light",
        "no added sugar", "sugar free", "unsweetened", "sweetened",
        "smooth", "crunchy", "creamy", "chunky", "fine", "finely", "coarse", "roughly",
        "thick", "thin", "sliced", "diced", "chopped", "minced", "shredded", "grated",
        "crushed", "halved", "peeled", "trimmed", "boneless", "skinless",
        "raw", "cooked", "roasted", "toasted", "steamed", "dried",
        "plain", "natural", "pure", "homemade", "homestyle",
        "organic", "free range", "grass fed", "cage free", "wild caught",
        "fresh", "ripe", "large", "medium", "small", "extra",
    ],
    key=len,
    reverse=True,
)
DESCRIPTOR_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(d) for d in STRIP_DESCRIPTORS) + r")\b")
QUANTITY_TOKEN_PATTERN = re.compile(
    r"\b(\d+(?:[\.,]\d+)?|kg|g|mg|ml|l|cups?|teaspoons?|tablespoons?|tsp|tbsp|oz|lbs?|pack|packs|pk|x)\b"
)
PARENTHETICAL_PATTERN = re.compile(r"\([^)]*\)")
PLURAL_EXCEPTIONS = {"hummus", "couscous", "asparagus", "molasses", "swiss", "bass", "grass", "citrus"}

PACK_SIZE_PATTERN = re.compile(
    r"(?:(\d+(?:[\.,]\d+)?)\s*[x×]\s*)?(\d+(?:[\.,]\d+)?)\s*(kg|g|mg|ml|l|oz|lb|lbs|litres?|liters?)\b",
    re.IGNORECASE,
)
PACK_COUNT_PATTERN = re.compile(r"(\d+)\s*(?:pack|pk|pcs|pieces|s)\b", re.IGNORECASE)

BANNED_KEYWORDS = (
    "cigarette", "capsule", "deodorant", "pet food", "cat food", "dog food", "bird seed",
    "toy", "non-food", "supplement", "vitamin", "tobacco", "vape", "roll-on",
    "binder", "folder", "stationery", "lighter", "shampoo", "conditioner",
    "soap", "lotion", "cleaner", "spray", "polish", "air freshener",
    "mouthwash", "toothpaste", "floss", "nappy", "nappies",
    "dishwashing", "laundry", "bleach", "detergent", "insect",
)
BANNED_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in BANNED_KEYWORDS) + r")\b")

CATEGORIES = ("Produce", "Meat & Seafood", "Dairy & Eggs", "Bakery", "Pantry", "Frozen", "Drinks", "Other")
CATEGORY_KEYWORDS: Sequence[tuple[str, tuple[str, ...]]] = (
    ("Pantry", ("peanut butter", "coconut milk", "almond milk", "stock", "broth", "tomato paste", "tomato sauce", "soy sauce", "canned")),
    ("Frozen", ("frozen", "ice cream")),
    ("Drinks", ("juice", "coffee", "tea", "soda", "sparkling", "cordial")),
    ("Dairy & Eggs", ("milk", "cheese", "yoghurt", "yogurt", "butter", "cream", "egg", "feta", "mozzarella", "parmesan", "cottage")),
    ("Meat & Seafood", ("chicken", "beef", "pork", "lamb", "mince", "turkey", "bacon", "ham", "sausage", "fish", "salmon", "tuna", "hake", "prawn", "shrimp", "steak")),
    ("Bakery", ("bread", "roll", "bun", "wrap", "tortilla", "pita", "bagel", "croissant", "muffin")),
    ("Produce", (
        "apple", "banana", "berry", "berries", "lemon", "lime", "orange", "avocado", "tomato", "onion",
        "garlic", "ginger", "potato", "carrot", "spinach", "lettuce", "cucumber", "pepper", "broccoli",
        "cauliflower", "mushroom", "zucchini", "courgette", "cabbage", "kale", "celery", "herb",
        "coriander", "parsley", "basil", "mint", "grape", "mango", "pear", "peach", "butternut", "pumpkin",
    )),
    ("Pantry", (
        "rice", "pasta", "oat", "flour", "sugar", "salt", "oil", "vinegar", "sauce", "stock", "spice",
        "bean", "lentil", "chickpea", "quinoa", "honey", "peanut", "almond", "nut", "seed", "cereal",
        "noodle", "couscous", "paste", "mustard", "mayonnaise", "cumin", "paprika", "cinnamon",
    )),
)
CATEGORY_ALIASES = {
    "fruit": "Produce",
    "vegetables": "Produce",
    "veg": "Produce",
    "meat": "Meat & Seafood",
    "seafood": "Meat & Seafood",
    "poultry": "Meat & Seafood",
    "dairy": "Dairy & Eggs",
    "eggs": "Dairy & Eggs",
    "bread": "Bakery",
    "grains": "Pantry",
    "spices": "Pantry",
    "condiments": "Pantry",
    "beverages": "Drinks",
}


@dataclass(frozen=True)
class Measurement:
    amount: float
    unit: str
    unit_type: str  # weight | volume | count | other


def normalize_ingredient_key(value: Any) -> Optional[str]:
    """Lower-case identity of an ingredient line, independent of quantity and prep notes."""
    if value is None:
        return None
    text = str(value).lower()
    text = PARENTHETICAL_PATTERN.sub(" ", text)
    text = text.replace("-", " ")
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    text = QUANTITY_TOKEN_PATTERN.sub(" ", text)
    text = DESCRIPTOR_PATTERN.sub(" ", text)
    words = text.split()
    if not words:
        return None
    words[-1] = singularize(words[-1])
    return " ".join(words)


def singularize(word: str) -> str:
    if word in PLURAL_EXCEPTIONS or len(word) <= 3:
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith("oes"):
        return word[:-2]
    if word.endswith(("ches", "shes", "sses", "xes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def to_canonical(quantity: Any, unit: Any) -> Measurement:
    """Convert a quantity to g, ml or a count; unknown units keep their own label."""
    amount = _coerce_amount(quantity)
    label = (str(unit or "").strip().lower()).rstrip(".")
    definition = UNIT_DEFINITIONS.get(label)
    if definition is not None:
        return Measurement(
            amount=amount * definition["multiplier"],
            unit=definition["unit_label"],
            unit_type=definition["unit_type"],
        )
    if not label or label in COUNT_UNITS:
        return Measurement(amount=amount, unit="each", unit_type="count")
    return Measurement(amount=amount, unit=label, unit_type="other")


def parse_pack_size(value: Any) -> Optional[Measurement]:
    """Parse a product pack size such as "1kg", "6 x 330ml" or "6s"."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    match = PACK_SIZE_PATTERN.search(text)
    if match:
        count = _coerce_amount(match.group(1)) if match.group(1) else 1.0
        per = _coerce_amount(match.group(2))
        unit_key = match.group(3).lower()
        definition = UNIT_DEFINITIONS.get(unit_key)
        if definition and per > 0:
            return Measurement(
                amount=count * per * definition["multiplier"],
                unit=definition["unit_label"],
                unit_type=definition["unit_type"],
            )
    count_match = PACK_COUNT_PATTERN.search(text)
    if count_match:
        return Measurement(amount=float(count_match.group(1)), unit="each", unit_type="count")
    return None


def is_banned_product(name: Any) -> bool:
    return bool(BANNED_PATTERN.search(str(name or "").lower()))


def categorize(key: str, declared: Optional[str] = None) -> str:
    if declared:
        cleaned = declared.strip()
        for category in CATEGORIES:
            if cleaned.lower() == category.lower():
                return category
        alias = CATEGORY_ALIASES.get(cleaned.lower())
        if alias:
            return alias
    for category, keywords in CATEGORY_KEYWORDS:
        if any(re.search(rf"\b{re.escape(word)}(?:s|es)?\b", key) for word in keywords):
            return category
    return "Other"


def format_quantity(amount: float) -> float:
    return round(amount, 2)


def _coerce_amount(value: Any) -> float:
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return 0.0
