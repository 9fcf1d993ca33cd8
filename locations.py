from typing import Dict, List, Optional

from errors import InvalidLocation

# Static domain table, loaded once at import. Canonical (lowercase) name -> display name.
CITIES: Dict[str, str] = {
    "vijayawada": "Vijayawada",
    "guntur": "Guntur",
    "visakhapatnam": "Visakhapatnam",
    "nellore": "Nellore",
    "kurnool": "Kurnool",
    "tirupati": "Tirupati",
    "rajahmundry": "Rajahmundry",
    "eluru": "Eluru",
    "anantapur": "Anantapur",
    "ongole": "Ongole",
}

# Hand-curated, not geometry. Some group members (kakinada, kadapa) sit outside
# the whitelist; nothing can be stored there, so fallback searches find no one.
REGION_GROUPS: Dict[str, List[str]] = {
    "coastal": ["visakhapatnam", "kakinada", "nellore"],
    "central": ["vijayawada", "guntur", "rajahmundry"],
    "southern": ["tirupati", "kadapa"],
    "western": ["kurnool", "anantapur"],
}

INITIATIVES: Dict[str, str] = {
    "annamitra-seva": "Food",
    "vidya-jyothi": "Education",
    "suraksha-setu": "Emergency support",
    "punarasha": "Rehabilitation",
    "raksha-jyothi": "Emergency response",
    "jyothi-nilayam": "Shelter",
}


class LocationValidator:
    """Normalizes and whitelists city names; pure functions over the static tables."""

    def __init__(self, cities: Optional[Dict[str, str]] = None, groups: Optional[Dict[str, List[str]]] = None):
        self.cities = dict(cities if cities is not None else CITIES)
        self.groups = {k: list(v) for k, v in (groups if groups is not None else REGION_GROUPS).items()}

    def normalize(self, raw) -> str:
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidLocation("Location must be a non-empty string")
        return raw.strip().lower()

    def validate(self, raw) -> str:
        location = self.normalize(raw)
        if location not in self.cities:
            raise InvalidLocation(
                f"Invalid location: {raw}. Must be one of: {', '.join(self.cities)}"
            )
        return location

    def nearby(self, location: str) -> List[str]:
        """Other members of the region group containing ``location``, in table order."""
        location = self.normalize(location)
        for cities in self.groups.values():
            if location in cities:
                return [c for c in cities if c != location]
        return []

    def region_of(self, location: str) -> Optional[str]:
        location = self.normalize(location)
        for region, cities in self.groups.items():
            if location in cities:
                return region
        return None

    def display_name(self, location: str) -> str:
        location = self.normalize(location)
        return self.cities.get(location, location.capitalize())

    def valid_cities(self) -> List[str]:
        return list(self.cities)
