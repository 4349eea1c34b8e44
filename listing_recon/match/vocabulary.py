"""Vocabulary tables and text helpers shared by the matcher and extractors."""

import re
from functools import lru_cache
from typing import Dict, List, Tuple

# Brand -> aliases. Aliases of two characters or less only count when they
# prefix a model number ("hd600", "dt 770").
BRAND_ALIASES: Dict[str, Tuple[str, ...]] = {
    "sennheiser": ("senn", "hd"),
    "audio-technica": ("audio technica", "audiotechnica", "ath", "at"),
    "beyerdynamic": ("beyer", "dt"),
    "hifiman": ("hifi man", "he"),
    "audeze": ("lcd",),
    "64 audio": ("64audio",),
    "ultimate ears": ("ue",),
    "final audio": ("final",),
    "campfire audio": ("campfire",),
    "empire ears": ("empire",),
    "jds labs": ("jds",),
    "tin hifi": ("tin audio",),
    "moondrop": (),
    "softears": ("soft ears",),
    "xenns": ("mangird",),
    "dan clark audio": ("dca", "mrspeakers"),
    "trn": (),
}

KNOWN_BRANDS: Tuple[str, ...] = (
    "sennheiser", "audio-technica", "beyerdynamic", "akg", "sony", "bose", "shure",
    "hifiman", "audeze", "focal", "dan clark audio", "zmf", "meze", "grado",
    "campfire audio", "empire ears", "noble audio", "64 audio", "unique melody",
    "qdc", "dunu", "moondrop", "fiio", "thieaudio", "letshuoer", "truthear", "7hz",
    "kz", "cca", "tin hifi", "blon", "tripowin", "smsl", "topping", "schiit",
    "jds labs", "geshelli", "drop", "monoprice", "ultimate ears", "final audio",
    "softears", "xenns", "trn", "rme", "chord", "woo audio", "ifi",
)

ACCESSORY_KEYWORDS: Tuple[str, ...] = (
    "eartip", "eartips", "ear tip", "ear tips", "tips", "tip",
    "cable", "cables", "interconnect",
    "case", "box", "packaging", "pouch",
    "pad", "pads", "cushion", "replacement",
    "stand", "hanger", "hook",
    "adapter", "dongle", "splitter",
)

STRONG_ACCESSORY_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"\beartips?\s+only\b", re.IGNORECASE),
    re.compile(r"\btips\s+only\b", re.IGNORECASE),
    re.compile(r"\b\d+\s+pairs?\s+of\s+(?:ear)?tips\b", re.IGNORECASE),
    re.compile(r"\bselling\s+(?:ear)?tips\b", re.IGNORECASE),
    re.compile(r"\bcable\s+only\b", re.IGNORECASE),
    re.compile(r"\bcase\s+only\b", re.IGNORECASE),
    re.compile(r"\bpads\s+only\b", re.IGNORECASE),
    re.compile(r"\b(?:ear)?tips?\s*\(", re.IGNORECASE),
)

GEAR_KEYWORDS: Tuple[str, ...] = (
    "headphone", "headphones", "iem", "iems", "dac", "amp", "amplifier",
    "cans", "monitors", "earphone", "earphones", "earbuds",
)

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "headphone": ("headphone", "headphones", "cans", "over ear", "over-ear", "on ear", "on-ear"),
    "iem": ("iem", "iems", "in ear", "in-ear", "earphone", "earphones", "earbuds", "monitors"),
    "dac": ("dac", "digital analog converter"),
    "amp": ("amp", "amplifier", "headphone amp"),
    "dac_amp": ("dac amp", "dac/amp", "combo", "stack", "all in one"),
}

CATEGORY_ALIASES: Dict[str, str] = {
    "cans": "headphone",
    "headphones": "headphone",
    "iems": "iem",
    "dac/amp": "dac_amp",
    "dac-amp": "dac_amp",
}

# Words that make brand/name strings prone to false positives
GENERIC_WORDS = frozenset({
    "space", "audio", "pro", "lite", "plus", "mini", "max", "ultra",
    "one", "two", "three", "air", "go", "se", "ex", "dx",
})
STRONG_GENERIC_WORDS = frozenset({"space", "audio", "air", "one", "go"})

ACCESSORY_CONTEXT_PHRASES: Tuple[str, ...] = (
    "compatible with", "cable for", "cables for", "pads for", "case for",
    "tips for", "adapter for", "upgrade for", "fits", "for", "with",
)

# Canonical catalog name -> known product-variant names
VARIANT_ALIASES: Dict[str, Tuple[str, ...]] = {
    "hd 6xx": ("hd6xx", "6xx", "hd650 massdrop"),
    "hd 58x": ("hd58x", "58x", "58x jubilee"),
    "hd 8xx": ("hd8xx", "8xx"),
    "clear mg": ("clear magnesium",),
    "dt 770 pro": ("dt770 pro", "dt770pro"),
    "blessing 2": ("blessing2", "b2"),
    "blessing 2 dusk": ("dusk",),
    "magni heretic": ("heretic",),
    "modi+": ("modi plus",),
    "atom amp+": ("atom amp plus", "atom+"),
}

_EDITION_WORDS = re.compile(
    r"\b(?:black|white|silver|blue|red|green|gold|grey|gray|pink|purple|"
    r"limited|special|anniversary|collector'?s?|edition|version|ver|colou?r(?:way)?)\b",
    re.IGNORECASE,
)

MODEL_NUMBER_PATTERN = re.compile(r"\b([a-z]{1,4})?(\d{2,4})([a-z]{0,3})?\b", re.IGNORECASE)
_PREFIX_GAP = re.compile(r"\b([a-z]{1,4})[\s\-]+(\d)", re.IGNORECASE)
_TOKENS = re.compile(r"[a-z]+|\d+")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return _WHITESPACE.sub(" ", (text or "").lower()).strip()


def join_model_prefixes(text: str) -> str:
    """Glue short letter prefixes to their numbers ("hd 600" -> "hd600")."""
    return _PREFIX_GAP.sub(r"\1\2", text)


def extract_model_numbers(text: str) -> List[str]:
    """Model-number tokens such as "hd600", "dt770", "m50x"."""
    joined = join_model_prefixes(normalize_text(text))
    return [m.group(0) for m in MODEL_NUMBER_PATTERN.finditer(joined)]


def phrase_tokens(phrase: str) -> List[str]:
    """Split a phrase into letter and digit runs ("HD-600s" -> hd, 600, s)."""
    return _TOKENS.findall((phrase or "").lower())


@lru_cache(maxsize=4096)
def phrase_pattern(phrase: str) -> re.Pattern:
    """Whole-word pattern for a phrase, insensitive to spacing and hyphens."""
    tokens = phrase_tokens(phrase)
    if not tokens:
        return re.compile(r"(?!x)x")
    body = r"[\s\-/]*".join(re.escape(tok) for tok in tokens)
    return re.compile(r"(?<![a-z0-9])" + body + r"(?![a-z0-9])", re.IGNORECASE)


def contains_phrase(text: str, phrase: str) -> bool:
    return bool(phrase_pattern(phrase).search(text or ""))


@lru_cache(maxsize=1024)
def alias_pattern(alias: str) -> re.Pattern:
    """Pattern for a brand alias; very short aliases must prefix a model number."""
    if len(alias.replace(" ", "")) <= 2:
        return re.compile(r"(?<![a-z0-9])" + re.escape(alias) + r"(?=[\s\-]?\d)", re.IGNORECASE)
    return phrase_pattern(alias)


def strip_edition_words(text: str) -> str:
    return _WHITESPACE.sub(" ", _EDITION_WORDS.sub(" ", text or "")).strip()


def brands_by_specificity(brands: Tuple[str, ...] = KNOWN_BRANDS) -> List[str]:
    """Brands ordered multi-word first, then longest first."""
    return sorted(set(brands), key=lambda b: (-len(phrase_tokens(b)), -len(b), b))


def normalize_category(category: str) -> str:
    value = (category or "").strip().lower()
    return CATEGORY_ALIASES.get(value, value)


def has_keyword(text: str, keywords) -> bool:
    """True if any keyword appears as a whole word/phrase in text."""
    return any(contains_phrase(text, keyword) for keyword in keywords)
