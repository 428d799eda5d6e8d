"""Static tax jurisdiction data.

US rates are used when a purchase carries no stored tax info. Canadian provinces
and Indian states back the country sales reports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

US_STATES: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "DC": "District of Columbia",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois",
    "IN": "Indiana", "IA": "Iowa", "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana",
    "ME": "Maine", "MD": "Maryland", "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota",
    "MS": "Mississippi", "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma", "OR": "Oregon",
    "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina", "SD": "South Dakota",
    "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont", "VA": "Virginia",
    "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}

# Inclusive 3-digit ZIP prefix ranges.
_ZIP3_RANGES: tuple[tuple[int, int, str], ...] = (
    (5, 5, "NY"), (10, 27, "MA"), (28, 29, "RI"), (30, 38, "NH"), (39, 49, "ME"), (50, 59, "VT"),
    (60, 69, "CT"), (70, 89, "NJ"), (100, 149, "NY"), (150, 196, "PA"), (197, 199, "DE"),
    (200, 205, "DC"), (206, 219, "MD"), (220, 246, "VA"), (247, 268, "WV"), (270, 289, "NC"),
    (290, 299, "SC"), (300, 319, "GA"), (320, 349, "FL"), (350, 369, "AL"), (370, 385, "TN"),
    (386, 397, "MS"), (398, 399, "GA"), (400, 427, "KY"), (430, 459, "OH"), (460, 479, "IN"),
    (480, 499, "MI"), (500, 528, "IA"), (530, 549, "WI"), (550, 567, "MN"), (570, 577, "SD"),
    (580, 588, "ND"), (590, 599, "MT"), (600, 629, "IL"), (630, 658, "MO"), (660, 679, "KS"),
    (680, 693, "NE"), (700, 714, "LA"), (716, 729, "AR"), (730, 749, "OK"), (750, 799, "TX"),
    (800, 816, "CO"), (820, 831, "WY"), (832, 838, "ID"), (840, 847, "UT"), (850, 865, "AZ"),
    (870, 884, "NM"), (885, 885, "TX"), (889, 898, "NV"), (900, 961, "CA"), (967, 968, "HI"),
    (970, 979, "OR"), (980, 994, "WA"), (995, 999, "AK"),
)

CA_PROVINCES: dict[str, str] = {
    "AB": "Alberta", "BC": "British Columbia", "MB": "Manitoba", "NB": "New Brunswick",
    "NL": "Newfoundland and Labrador", "NS": "Nova Scotia", "NT": "Northwest Territories",
    "NU": "Nunavut", "ON": "Ontario", "PE": "Prince Edward Island", "QC": "Quebec",
    "SK": "Saskatchewan", "YT": "Yukon",
}

# ISO 3166-2:IN subdivision codes.
IN_STATES: frozenset[str] = frozenset({
    "AN", "AP", "AR", "AS", "BR", "CH", "CT", "DH", "DL", "GA", "GJ", "HP", "HR", "JH", "JK",
    "KA", "KL", "LA", "LD", "MH", "ML", "MN", "MP", "MZ", "NL", "OR", "PB", "PY", "RJ", "SK",
    "TG", "TN", "TR", "UP", "UT", "WB",
})
IN_GST_RATE = Decimal("0.18")

COUNTRY_NAMES: dict[str, str] = {
    "AU": "Australia", "CA": "Canada", "DE": "Germany", "ES": "Spain", "FR": "France",
    "GB": "United Kingdom", "IN": "India", "JP": "Japan", "US": "United States",
}

PRODUCT_TAX_CODES: dict[str, str] = {
    "digital": "31000",
    "ebook": "31000",
    "audiobook": "31000",
    "membership": "31000",
    "course": "86132000A0001",
    "physical": "",
}


@dataclass(frozen=True)
class JurisdictionRates:
    state: str
    county: str | None
    city: str | None
    state_rate: Decimal
    county_rate: Decimal
    city_rate: Decimal
    combined_rate: Decimal

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in ("state_rate", "county_rate", "city_rate", "combined_rate"):
            data[name] = format_rate(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JurisdictionRates:
        return cls(
            state=str(data.get("state", "")),
            county=data.get("county") or None,
            city=data.get("city") or None,
            state_rate=Decimal(str(data.get("state_rate", "0"))),
            county_rate=Decimal(str(data.get("county_rate", "0"))),
            city_rate=Decimal(str(data.get("city_rate", "0"))),
            combined_rate=Decimal(str(data.get("combined_rate", "0"))),
        )


def _rates(state: str, county: str | None, city: str | None, s: str, c: str, ci: str, combined: str) -> JurisdictionRates:
    return JurisdictionRates(state, county, city, Decimal(s), Decimal(c), Decimal(ci), Decimal(combined))


_RATES_BY_ZIP: dict[str, JurisdictionRates] = {
    "98121": _rates("WA", "KING", "SEATTLE", "0.065", "0.004", "0.0115", "0.1035"),
    "98184": _rates("WA", "KING", None, "0.065", "0.004", "0.01", "0.102"),
    "98612": _rates("WA", "WAHKIAKUM", None, "0.065", "0.003", "0.01", "0.078"),
    "98604": _rates("WA", "CLARK", None, "0.065", "0.003", "0.01", "0.078"),
    "94016": _rates("CA", "SAN MATEO", "DALY CITY", "0.06", "0.0025", "0.01", "0.0975"),
    "19464": _rates("PA", "MONTGOMERY", None, "0.06", "0", "0", "0.06"),
    "10001": _rates("NY", "NEW YORK", "NEW YORK", "0.04", "0", "0.04875", "0.08875"),
}


def normalize_zip(zip_code: str | None) -> str:
    digits = "".join(ch for ch in str(zip_code or "") if ch.isdigit())
    return digits[:5] if len(digits) >= 5 else ""


def state_for_zip(zip_code: str | None) -> str | None:
    normalized = normalize_zip(zip_code)
    if not normalized:
        return None
    prefix = int(normalized[:3])
    for low, high, state in _ZIP3_RANGES:
        if low <= prefix <= high:
            return state
    return None


def lookup_rates(zip_code: str | None) -> JurisdictionRates | None:
    return _RATES_BY_ZIP.get(normalize_zip(zip_code))


def is_valid_state(code: str) -> bool:
    return code in US_STATES


def product_tax_code(native_type: str) -> str:
    return PRODUCT_TAX_CODES.get(native_type, "31000")


def format_rate(rate: Decimal | str | float) -> str:
    value = Decimal(str(rate)).normalize()
    return format(value, "f") if value != 0 else "0"


def country_name(code: str | None) -> str:
    code = str(code or "").upper()
    return COUNTRY_NAMES.get(code, code)
