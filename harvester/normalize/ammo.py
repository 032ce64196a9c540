"""Ammunition attribute extraction and canonical product IDs."""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional, Union

Grain = Union[int, float]

GRAIN_MIN = 20
GRAIN_MAX = 800
ROUND_COUNT_MIN = 5
ROUND_COUNT_MAX = 5000

# A number that is not the tail of another number or a token like "x39"
_NUM = r"(?<![\w.])(\d+)"

# Ordered; the first match wins, so more specific patterns come first.
CALIBER_PATTERNS: list[tuple[re.Pattern, str]] = [
    # Pistol
    (r"(?<!\d)9\s?mm\b|\b9x19\b|\b9\s?luger\b", "9mm"),
    (r"(?<![\d.])\.?45\s?(?:acp|auto)\b", ".45 ACP"),
    (r"(?<![\d.])\.?40\s?s&w\b", ".40 S&W"),
    (r"(?<![\d.])\.?38\s?(?:special|spl)\b", ".38 Special"),
    (r"(?<![\d.])\.?357\s?sig\b", ".357 SIG"),
    (r"(?<![\d.])\.?357\s?mag(?:num)?\b", ".357 Magnum"),
    (r"(?<![\d.])10\s?mm\b", "10mm Auto"),
    (r"(?<![\d.])\.?380\s?(?:acp|auto)\b", ".380 ACP"),
    (r"(?<![\d.])\.?32\s?(?:acp|auto)\b", ".32 ACP"),
    (r"(?<![\d.])\.?25\s?(?:acp|auto)\b", ".25 ACP"),
    # Rimfire
    (r"(?<![\d.])\.?22\s?(?:lr|long\s?rifle)\b", ".22 LR"),
    (r"(?<![\d.])\.?17\s?hmr\b", ".17 HMR"),
    # Rifle
    (r"(?<![\d.])5\.56(?:x45(?:mm)?|\s?mm)?\b", "5.56 NATO"),
    (r"(?<![\d.])(?:\.223|223\s?rem(?:ington)?)\b", ".223 Remington"),
    (r"(?<![\d.])7\.62\s?x\s?39(?:mm)?\b", "7.62x39mm"),
    (r"(?<![\d.])7\.62\s?x\s?54r\b", "7.62x54R"),
    (
        r"(?<![\d.])7\.62\s?(?:nato|x\s?51(?:mm)?)\b|(?<![\d.])(?:\.308|308\s?win(?:chester)?)\b",
        ".308 Winchester",
    ),
    (r"(?<![\d.])\.?30-06\b", ".30-06 Springfield"),
    (r"(?<![\d.])\.?30\s?carbine\b", ".30 Carbine"),
    (r"(?<![\d.])\.?300\s?(?:aac\s*)?(?:blk|blackout)\b", ".300 Blackout"),
    (r"(?<![\d.])\.?300\s?win(?:chester)?\s?mag(?:num)?\b", ".300 Winchester Magnum"),
    (r"(?<![\d.])\.?300\s?(?:wby|weatherby)\b", ".300 Weatherby"),
    (r"(?<![\d.])6\.5\s?(?:mm\s?)?(?:creedmoor|cm)\b", "6.5 Creedmoor"),
    (r"(?<![\d.])6\.5\s?(?:mm\s?)?grendel\b", "6.5 Grendel"),
    (r"(?<![\d.])\.?270\s?win(?:chester)?\b", ".270 Winchester"),
    (r"(?<![\d.])\.?243\s?win(?:chester)?\b", ".243 Winchester"),
    (r"(?<![\d.])\.?50\s?bmg\b", ".50 BMG"),
    # Shotgun
    (r"(?<![\d.])12\s?(?:ga|gauge)\b", "12 Gauge"),
    (r"(?<![\d.])20\s?(?:ga|gauge)\b", "20 Gauge"),
    (r"(?<![\d.])16\s?(?:ga|gauge)\b", "16 Gauge"),
    (r"(?<![\d.])28\s?(?:ga|gauge)\b", "28 Gauge"),
    (r"(?<![\d.])(?:\.410|410\s?(?:bore|ga(?:uge)?))\b", ".410 Bore"),
]
CALIBER_PATTERNS = [(re.compile(p, re.IGNORECASE), name) for p, name in CALIBER_PATTERNS]

GRAIN_PATTERN = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d)?)\s?-?\s?gr(?:ain)?s?\b", re.IGNORECASE)

ROUND_COUNT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        _NUM + r"\s?(?:rounds?|rds?|count|ct)\b",
        _NUM + r"-(?:round|rd|count|ct)\b",
        _NUM + r"\s?/\s?(?:box|bx)\b",
        r"\b(?:box|pk|pack|case|carton)\s?of\s?(\d+)",
        _NUM + r"\s?-?(?:pk|pack)\b",
        r"\bqty:?\s?(\d+)",
        r"\bbulk\s?(\d+)\b",
        r"\((\d+)\)\s*$",
    )
]

CASE_MATERIAL_PATTERNS = [
    (re.compile(r"nickel\s?plated|nickel-plated|ni-?plated", re.IGNORECASE), "Nickel-Plated"),
    (re.compile(r"polymer\s?coat|poly-?coat", re.IGNORECASE), "Polymer-Coated"),
    (re.compile(r"\bbrass\b", re.IGNORECASE), "Brass"),
    (re.compile(r"\bsteel\b", re.IGNORECASE), "Steel"),
    (re.compile(r"\balumin(?:um|ium)\b", re.IGNORECASE), "Aluminum"),
]

PURPOSE_PATTERNS = [
    (re.compile(r"\bfmj\b|full\s?metal\s?jacket", re.IGNORECASE), "Target"),
    (re.compile(r"\bjhp\b|jacketed\s?hollow\s?point|hollow\s?point", re.IGNORECASE), "Defense"),
    (re.compile(r"\bsp\b|soft\s?point", re.IGNORECASE), "Hunting"),
    (re.compile(r"\botm\b|open\s?tip\s?match|match\s?grade", re.IGNORECASE), "Precision"),
    (re.compile(r"\bv-?max\b|ballistic\s?tip|polymer\s?tip", re.IGNORECASE), "Hunting"),
    (re.compile(r"\blrn\b|lead\s?round\s?nose", re.IGNORECASE), "Training"),
    (re.compile(r"\btmj\b|total\s?metal\s?jacket", re.IGNORECASE), "Training"),
]

SLUG_WEIGHT_PATTERN = re.compile(r"(\d+(?:\.\d+)?|\d/\d)\s?oz\b", re.IGNORECASE)
BUCKSHOT_PATTERN = re.compile(r"\b(000|00|0|[1-4])\s?-?\s?buck(?:shot)?\b", re.IGNORECASE)
BIRDSHOT_PATTERN = re.compile(r"#\s?(\d{1,2}(?:\.5)?)\b|\b(\d{1,2}(?:\.5)?)\s?shot\b", re.IGNORECASE)


def extract_caliber(name: str) -> Optional[str]:
    """Return the normalized caliber of the first matching pattern."""
    if not name:
        return None
    for pattern, normalized in CALIBER_PATTERNS:
        if pattern.search(name):
            return normalized
    return None


def extract_grain_weight(name: str) -> Optional[Grain]:
    """Bullet weight in grains, e.g. "115gr", "55 grain", "62.5gr"."""
    for match in GRAIN_PATTERN.finditer(name or ""):
        value = float(match.group(1))
        if GRAIN_MIN <= value <= GRAIN_MAX:
            return int(value) if value.is_integer() else value
    return None


def extract_round_count(name: str) -> Optional[int]:
    """
    Rounds per package from conventions like "50 rounds", "100rd", "20-count",
    "box of 50", "50/box", "25-pack", "qty 20" or a trailing "(50)".

    Numbers that belong to caliber notation ("7.62x39", "5.56x45") are never
    read as counts.
    """
    if not name:
        return None
    for pattern in ROUND_COUNT_PATTERNS:
        for match in pattern.finditer(name):
            if _is_caliber_dimension(name, match.start(1)):
                continue
            count = int(match.group(1))
            if ROUND_COUNT_MIN <= count <= ROUND_COUNT_MAX:
                return count
    return None


def _is_caliber_dimension(text: str, start: int) -> bool:
    return start > 0 and text[start - 1] in "xX" and start > 1 and text[start - 2].isdigit()


def extract_case_material(name: str) -> Optional[str]:
    for pattern, material in CASE_MATERIAL_PATTERNS:
        if pattern.search(name or ""):
            return material
    return None


def classify_purpose(name: str) -> Optional[str]:
    """Purpose from the bullet type named in the title."""
    for pattern, purpose in PURPOSE_PATTERNS:
        if pattern.search(name or ""):
            return purpose
    return None


def derive_shotgun_load_type(name: str) -> Optional[str]:
    """Slug / buckshot / birdshot description for shotgun shells."""
    text = name or ""
    if re.search(r"\bslugs?\b", text, re.IGNORECASE):
        weight = SLUG_WEIGHT_PATTERN.search(text)
        return f"{weight.group(1)}oz Slug" if weight else "Slug"

    buck = BUCKSHOT_PATTERN.search(text)
    if buck:
        return f"{buck.group(1)} Buck"

    if re.search(r"\bbuck(?:shot)?\b", text, re.IGNORECASE):
        return "Buckshot"

    bird = BIRDSHOT_PATTERN.search(text)
    if bird:
        return f"#{bird.group(1) or bird.group(2)} Shot"
    return None


def normalize_upc(upc: str) -> str:
    """Digits only; 11-digit codes are left-padded to UPC-A length."""
    digits = re.sub(r"\D", "", upc)
    if len(digits) == 11:
        return "0" + digits
    return digits


def normalize_product_name(name: str) -> str:
    name = re.sub(r"[^\w\s]", "", name.lower())
    return re.sub(r"\s+", "_", name.strip())


def generate_product_id(
    name: str,
    upc: Optional[str] = None,
    caliber: Optional[str] = None,
    grain_weight: Optional[Grain] = None,
    brand: Optional[str] = None,
) -> str:
    """
    Canonical product ID.

    The normalized UPC when one is present, otherwise the first 16 hex
    characters of a SHA-256 over brand, caliber, grain and normalized name.
    """
    if upc:
        normalized = normalize_upc(upc)
        if normalized:
            return normalized

    components = [
        (brand or "").lower().strip() or "unknown",
        (caliber or "").lower().strip(),
        f"{grain_weight:g}" if grain_weight else "",
        normalize_product_name(name),
    ]
    hash_input = "_".join(c for c in components if c)
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()[:16]


@dataclass
class AmmoAttributes:
    """Domain attributes extracted from a product title."""

    product_id: str
    caliber: Optional[str] = None
    grain_weight: Optional[Grain] = None
    case_material: Optional[str] = None
    purpose: Optional[str] = None
    round_count: Optional[int] = None
    load_type: Optional[str] = None
    upc: Optional[str] = None
    brand: Optional[str] = None


class AmmoNormalizer:
    """Domain normalizer for ammunition listings."""

    category = "Ammunition"

    def apply(self, name: str, upc: Optional[str] = None, brand: Optional[str] = None) -> AmmoAttributes:
        caliber = extract_caliber(name)
        grain_weight = extract_grain_weight(name)
        load_type = None
        if caliber and ("Gauge" in caliber or caliber == ".410 Bore"):
            load_type = derive_shotgun_load_type(name)

        upc = normalize_upc(upc) if upc else None
        return AmmoAttributes(
            product_id=generate_product_id(
                name,
                upc=upc,
                caliber=caliber,
                grain_weight=grain_weight,
                brand=brand,
            ),
            caliber=caliber,
            grain_weight=grain_weight,
            case_material=extract_case_material(name),
            purpose=classify_purpose(name),
            round_count=extract_round_count(name),
            load_type=load_type,
            upc=upc or None,
            brand=brand or None,
        )

    def is_domain_item(self, attributes: AmmoAttributes) -> bool:
        return attributes.caliber is not None
