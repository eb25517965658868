# Complaint category taxonomy and keyword-based category suggestion

from typing import Dict, List, Optional, Tuple

OTHER = "Other"
DEFAULT_CATEGORY = "General"

CATEGORY_SUBCATEGORIES: Dict[str, List[str]] = {
    "Road Damage": [
        "Pothole", "Crack in Road", "Broken Asphalt", "Sinkhole", "Road Marking Faded",
        "Speed Bump Damaged", "Road Shoulder Eroded", "Debris on Road",
        "Uneven Road Surface", "Other Road Damage",
    ],
    "Water Supply": [
        "No Water Supply", "Low Water Pressure", "Water Leakage", "Dirty/Contaminated Water",
        "Water Quality Issue", "Broken Water Pipe", "Water Supply Interruption",
        "Overflowing Water Tank", "Water Meter Issue", "Other Water Supply Issue",
    ],
    "Streetlight": [
        "Light Not Working", "Flickering Light", "Broken Bulb", "Missing Streetlight",
        "Light Always On", "Damaged Light Pole", "Insufficient Lighting",
        "Light Cover Broken", "Wiring Issue", "Other Streetlight Issue",
    ],
    "Garbage Disposal": [
        "Overflowing Garbage Bin", "No Garbage Collection", "Illegal Dump Site",
        "Garbage Bin Missing", "Garbage Bin Damaged", "Garbage Not Collected on Time",
        "Animal Scattering Garbage", "Garbage Truck Issue", "Recycling Bin Issue",
        "Other Garbage Disposal Issue",
    ],
    "Noise Pollution": [
        "Construction Noise", "Loud Music/Sound System", "Traffic Noise", "Industrial Noise",
        "Neighbor Noise", "Vehicle Horn Noise", "Event/Party Noise", "Machinery Noise",
        "Animal Noise", "Other Noise Pollution",
    ],
    "Drainage": [
        "Blocked Drain", "Drain Overflow", "Flooding", "Clogged Sewer", "Drain Cover Missing",
        "Drain Cover Broken", "Waterlogging", "Drainage System Not Working", "Sewer Smell",
        "Other Drainage Issue",
    ],
}

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "Road Damage": ["road", "pothole", "crack", "asphalt", "street", "pavement", "damage", "broken"],
    "Water Supply": ["water", "supply", "leak", "pipe", "dripping", "no water", "pressure", "tap"],
    "Streetlight": ["light", "streetlight", "lamp", "dark", "bulb", "out", "broken", "flickering"],
    "Garbage Disposal": ["garbage", "trash", "waste", "bin", "dump", "rubbish", "collection", "overflow"],
    "Noise Pollution": ["noise", "loud", "sound", "music", "construction", "disturbance", "annoying"],
    "Drainage": ["drain", "drainage", "water", "flood", "blocked", "clogged", "sewer", "overflow"],
}

MIN_SUGGESTION_LENGTH = 20


def is_taxonomy_category(category: Optional[str]) -> bool:
    return bool(category) and category in CATEGORY_SUBCATEGORIES


def suggest_category(description: str) -> Optional[str]:
    """Pick the category whose keywords appear most often in *description*.

    Substring matching on the lower-cased text; the first category wins a tie.
    Returns None for short descriptions or when nothing matches.
    """
    text = (description or "").strip()
    if len(text) < MIN_SUGGESTION_LENGTH:
        return None
    lower = text.lower()
    best, best_hits = None, 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for kw in keywords if kw in lower)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def suggest_subcategory(category: str, description: str) -> Optional[str]:
    lower = (description or "").lower()
    best, best_hits = None, 0
    for sub in CATEGORY_SUBCATEGORIES.get(category, []):
        hits = sum(1 for word in sub.lower().split(" ") if word in lower)
        if hits > best_hits:
            best, best_hits = sub, hits
    return best


def suggest(description: str) -> Tuple[Optional[str], Optional[str]]:
    category = suggest_category(description)
    if category is None:
        return None, None
    return category, suggest_subcategory(category, description)
