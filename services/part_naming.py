# User value: This file turns messy instrument labels into consistent part names and safe filenames.
"""Instrument label normalization and part naming.

    normalize_instrument_label("Clarinet 1")
        -> instrument="1st Bb Clarinet", chair="1st", transposition="Bb", section="Woodwinds"
    build_part_display_name("American Patrol", "1st Bb Clarinet")
        -> "American Patrol 1st Bb Clarinet"
    build_part_filename("American Patrol 1st Bb Clarinet")
        -> "American_Patrol_1st_Bb_Clarinet.pdf"
"""
import re
from dataclasses import asdict, dataclass
from typing import Optional

PART_FILENAME_MAX_BASE = 200
PART_FILENAME_EXT = ".pdf"
STORAGE_SLUG_MAX = 150

PART_TYPE_PART = "PART"
PART_TYPE_FULL_SCORE = "FULL_SCORE"
PART_TYPE_CONDUCTOR_SCORE = "CONDUCTOR_SCORE"
PART_TYPE_CONDENSED_SCORE = "CONDENSED_SCORE"

SECTION_OTHER = "Other"
SECTION_SCORE = "Score"


@dataclass(frozen=True)
class NormalizedInstrument:
    instrument: str
    chair: Optional[str]
    section: str
    transposition: str
    part_type: str = PART_TYPE_PART

    def to_dict(self) -> dict:
        return asdict(self)


_CHAIR_PATTERNS = [
    (re.compile(r"\b(1st|first|i\b|1)\b", re.IGNORECASE), "1st"),
    (re.compile(r"\b(2nd|second|ii\b|2)\b", re.IGNORECASE), "2nd"),
    (re.compile(r"\b(3rd|third|iii\b|3)\b", re.IGNORECASE), "3rd"),
    (re.compile(r"\b(4th|fourth|iv\b|4)\b", re.IGNORECASE), "4th"),
    (re.compile(r"\b(aux|auxiliary)\b", re.IGNORECASE), "Aux"),
    (re.compile(r"\b(solo)\b", re.IGNORECASE), "Solo"),
]

# "Clarinet in Bb II", "Bb Clarinet 2" and "Clarinet 2 in Bb" all become "2nd Bb Clarinet".
_CHAIR_PHRASES = [
    re.compile(r"\bclarinet\s+in\s+bb\s*(i{1,3}|iv|1|2|3|4)\b", re.IGNORECASE),
    re.compile(r"\bbb\s+clarinet\s*(i{1,3}|iv|1|2|3|4)\b", re.IGNORECASE),
    re.compile(r"\bclarinet\s*(i{1,3}|iv|1|2|3|4)\s+in\s+bb\b", re.IGNORECASE),
]

_ROMAN_CHAIRS = {"i": "1st", "1": "1st", "ii": "2nd", "2": "2nd", "iii": "3rd", "3": "3rd", "iv": "4th", "4": "4th"}

# Order matters: the first match wins, so specific names precede generic ones.
_INSTRUMENT_MAPPINGS = [
    # woodwinds
    (r"piccolo", "Piccolo", "C", "Woodwinds"),
    (r"\beb[\s.-]?clarinet\b", "Eb Clarinet", "Eb", "Woodwinds"),
    (r"\bbass[\s.-]?clarinet\b", "Bass Clarinet", "Bb", "Woodwinds"),
    (r"\bclarinet\b", "Bb Clarinet", "Bb", "Woodwinds"),
    (r"\bflute\b", "Flute", "C", "Woodwinds"),
    (r"\boboe\b", "Oboe", "C", "Woodwinds"),
    (r"\benglish[\s.-]?horn\b", "English Horn", "F", "Woodwinds"),
    (r"\bcontra[\s.-]?bassoon\b", "Contrabassoon", "C", "Woodwinds"),
    (r"\bbassoon\b", "Bassoon", "C", "Woodwinds"),
    (r"\bsoprano[\s.-]?sax", "Soprano Saxophone", "Bb", "Woodwinds"),
    (r"\balto[\s.-]?sax", "Alto Saxophone", "Eb", "Woodwinds"),
    (r"\btenor[\s.-]?sax", "Tenor Saxophone", "Bb", "Woodwinds"),
    (r"\bbari(tone)?[\s.-]?sax", "Baritone Saxophone", "Eb", "Woodwinds"),
    (r"\bsax(ophone)?\b", "Saxophone", "C", "Woodwinds"),
    # brass
    (r"\bflugelhorn\b", "Flugelhorn", "Bb", "Brass"),
    (r"\btrumpet\b", "Trumpet", "Bb", "Brass"),
    (r"\bcornet\b", "Cornet", "Bb", "Brass"),
    (r"\bbass[\s.-]?trombone\b", "Bass Trombone", "C", "Brass"),
    (r"\btrombone\b", "Trombone", "C", "Brass"),
    (r"\beuphonium\b", "Euphonium", "C", "Brass"),
    (r"\bhorn\b", "Horn", "F", "Brass"),
    (r"\btuba\b", "Tuba", "C", "Brass"),
    (r"\bbaritone\b", "Baritone", "C", "Brass"),
    # percussion
    (r"\btimpani\b", "Timpani", "C", "Percussion"),
    (r"\bsnare[\s.-]?drum\b", "Snare Drum", "C", "Percussion"),
    (r"\bbass[\s.-]?drum\b", "Bass Drum", "C", "Percussion"),
    (r"\bmarimba\b", "Marimba", "C", "Percussion"),
    (r"\bxylophone\b", "Xylophone", "C", "Percussion"),
    (r"\bvibraphone\b", "Vibraphone", "C", "Percussion"),
    (r"\bmallet", "Mallet Percussion", "C", "Percussion"),
    (r"\bpercussion\b", "Percussion", "C", "Percussion"),
    # strings
    (r"\bviolin\b", "Violin", "C", "Strings"),
    (r"\bviola\b", "Viola", "C", "Strings"),
    (r"\bcello\b", "Cello", "C", "Strings"),
    (r"\bstring[\s.-]?bass\b", "String Bass", "C", "Strings"),
    (r"\bharp\b", "Harp", "C", "Strings"),
    # keyboard
    (r"\bpiano\b", "Piano", "C", "Keyboard"),
    (r"\borgan\b", "Organ", "C", "Keyboard"),
    # score references
    (r"\bconductor\b", "Conductor Score", "C", "Score"),
    (r"\bfull[\s.-]?score\b", "Full Score", "C", "Score"),
    (r"\bcondensed[\s.-]?score\b", "Condensed Score", "C", "Score"),
]

INSTRUMENT_MAPPINGS = [
    (re.compile(pattern, re.IGNORECASE), base, transposition, section)
    for pattern, base, transposition, section in _INSTRUMENT_MAPPINGS
]

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|]')
_NON_SLUG_CHARS = re.compile(r"[^a-zA-Z0-9\-_ ]")
_WHITESPACE = re.compile(r"\s+")
_MULTI_UNDERSCORE = re.compile(r"_{2,}")


def _normalize_chair_phrases(raw: str) -> str:
    normalized = _WHITESPACE.sub(" ", (raw or "").strip())
    for pattern in _CHAIR_PHRASES:
        normalized = pattern.sub(
            lambda m: f"{_ROMAN_CHAIRS.get(m.group(1).lower(), m.group(1))} Bb Clarinet",
            normalized,
        )
    return normalized


def infer_chair(raw: str) -> Optional[str]:
    for pattern, chair in _CHAIR_PATTERNS:
        if pattern.search(raw):
            return chair
    return None


def infer_part_type(raw: str) -> str:
    lower = (raw or "").lower()
    if re.search(r"\bconductor\b", lower):
        return PART_TYPE_CONDUCTOR_SCORE
    if re.search(r"\bcondensed\s+score\b", lower):
        return PART_TYPE_CONDENSED_SCORE
    if re.search(r"\b(full\s+score|score)\b", lower):
        return PART_TYPE_FULL_SCORE
    return PART_TYPE_PART


def normalize_instrument_label(raw: str | None) -> NormalizedInstrument:
    """Map a raw label from model or OCR output to canonical instrument, chair, section and key."""
    label = _normalize_chair_phrases(raw or "")
    chair = infer_chair(label)
    part_type = infer_part_type(label)

    for pattern, base, transposition, section in INSTRUMENT_MAPPINGS:
        if pattern.search(label):
            instrument = f"{chair} {base}" if chair else base
            return NormalizedInstrument(
                instrument=instrument,
                chair=chair,
                section=section,
                transposition=transposition,
                part_type=part_type,
            )

    return NormalizedInstrument(
        instrument=label.strip() or "Unknown",
        chair=chair,
        section=SECTION_OTHER,
        transposition="C",
        part_type=part_type,
    )


def guess_instrument_family(label: str | None) -> str:
    return normalize_instrument_label(label).section


def build_part_display_name(piece_title: str, instrument: str) -> str:
    title = _WHITESPACE.sub(" ", (piece_title or "").strip())
    return f"{title} {(instrument or '').strip()}".strip()


def build_part_filename(display_name: str) -> str:
    base = _UNSAFE_FILENAME_CHARS.sub("", (display_name or "").strip())
    base = _WHITESPACE.sub("_", base)
    base = _MULTI_UNDERSCORE.sub("_", base)
    return base[:PART_FILENAME_MAX_BASE] + PART_FILENAME_EXT


def build_part_storage_slug(display_name: str) -> str:
    slug = _NON_SLUG_CHARS.sub("", (display_name or "").strip())
    slug = _WHITESPACE.sub("_", slug)
    slug = _MULTI_UNDERSCORE.sub("_", slug)
    return slug[:STORAGE_SLUG_MAX]
