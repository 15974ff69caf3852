"""Shared utility functions for the verification pipeline.

  - Tamil numeral / script helpers
  - Survey number normalization, parsing, and fuzzy matching
  - Person name normalization, initials-aware fuzzy matching
  - Land classification and government-land marker detection
  - Opaque cross-source tokens (``SurveyNumber``, ``AreaText``)
"""

from __future__ import annotations

import re
import logging
from difflib import SequenceMatcher
from typing import Any

from landguard.config import NAME_MATCH_THRESHOLD, NAME_PARTIAL_THRESHOLD

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════
# 0. TAMIL SCRIPT HELPERS
# ═══════════════════════════════════════════════════

# Tamil digits ௦–௯ (U+0BE6–U+0BEF) → ASCII 0–9
_TAMIL_DIGIT_TABLE = str.maketrans(
    "௦௧௨௩௪௫௬௭௮௯",
    "0123456789",
)


def normalize_tamil_numerals(s: str) -> str:
    """Replace Tamil digits (௦–௯) with ASCII equivalents.

      "௩௧௭"        → "317"
      "Survey ௩/௧" → "Survey 3/1"
    """
    if not s or not isinstance(s, str):
        return s or ""
    return s.translate(_TAMIL_DIGIT_TABLE)


def has_tamil(s: str) -> bool:
    """Check if string contains Tamil Unicode characters."""
    return any('஀' <= ch <= '௿' for ch in (s or ""))


def _levenshtein_distance(s1: str, s2: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(s1) < len(s2):
        return _levenshtein_distance(s2, s1)
    if len(s2) == 0:
        return len(s1)
    prev = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        curr = [i + 1]
        for j, c2 in enumerate(s2):
            ins = prev[j + 1] + 1
            dele = curr[j] + 1
            sub = prev[j] + (0 if c1 == c2 else 1)
            curr.append(min(ins, dele, sub))
        prev = curr
    return prev[-1]


# ═══════════════════════════════════════════════════
# 1. SURVEY NUMBER NORMALIZATION & FUZZY MATCHING
# ═══════════════════════════════════════════════════

# Tamil Nadu survey number prefixes (English + Tamil)
_SURVEY_PREFIXES = re.compile(
    r'^(?:'
    r's\.?f\.?\s*no\.?|'          # S.F.No., SF No
    r'r\.?s\.?\s*no\.?|'          # R.S.No.
    r't\.?s\.?\s*no\.?|'          # T.S.No.
    r'o\.?s\.?\s*no\.?|'          # O.S.No.
    r'n\.?s\.?\s*no\.?|'          # N.S.No.
    r's\.?no\.?|'                 # S.No., SNo
    r'survey\s*(?:no|number)\.?|' # Survey No
    r'sy\.?\s*no\.?|'             # Sy.No.
    r'புல\s*எண்\.?|'              # புல எண் (Survey Number)
    r'நில\s*எண்\.?'               # நில எண் (Land Number)
    r')\s*:?\s*',
    re.IGNORECASE | re.UNICODE,
)


def normalize_survey_number(sn: str) -> str:
    """Normalize a survey number for comparison.

    Strips TN-specific prefixes (S.F.No., R.S.No., புல எண், ...),
    treats ``-`` and ``/`` alike and removes whitespace.
    """
    if not sn or not isinstance(sn, str):
        return ""
    s = normalize_tamil_numerals(sn.strip().lower())
    s = _SURVEY_PREFIXES.sub('', s)
    s = s.replace("-", "/")
    s = re.sub(r'\s+', '', s)
    return s.strip()


def parse_survey_components(normalized: str) -> tuple[str, str, str]:
    """Parse a normalized survey number into (base, subdivision, sub_subdivision).

      "311"     → ("311", "", "")
      "311/1a"  → ("311", "1", "a")
      "311/1/a" → ("311", "1", "a")
    """
    if not normalized:
        return ("", "", "")

    parts = normalized.split("/")
    base = parts[0] if parts else ""
    sub = ""
    sub_sub = ""

    if len(parts) >= 2:
        m = re.match(r'^(\d+)([a-z]\w*)?$', parts[1])
        if m:
            sub = m.group(1)
            sub_sub = m.group(2) or ""
        else:
            sub = parts[1]

    if len(parts) >= 3:
        sub_sub = parts[2]

    return (base, sub, sub_sub)


def survey_numbers_match(a: str, b: str) -> tuple[bool, str]:
    """Check if two survey numbers refer to the same parcel.

    Returns:
      (True, "exact")        — normalized forms are identical
      (True, "subdivision")  — one is a parent of the other (311/1 vs 311/1A)
      (True, "ocr_fuzzy")    — edit distance 1 on a non-digit character
      (False, "mismatch")
    """
    na = normalize_survey_number(a)
    nb = normalize_survey_number(b)

    if not na or not nb:
        return (False, "mismatch")

    if na == nb:
        return (True, "exact")

    ca = parse_survey_components(na)
    cb = parse_survey_components(nb)

    if ca[0] == cb[0] and ca[0]:
        if (ca[1] and not cb[1]) or (cb[1] and not ca[1]):
            return (True, "subdivision")
        if ca[1] == cb[1] and ca[1]:
            if (ca[2] and not cb[2]) or (cb[2] and not ca[2]):
                return (True, "subdivision")

    # A single changed digit on short numbers ("311/1" vs "311/2") is a
    # different subdivision, not OCR noise.
    if len(na) >= 5 and len(nb) >= 5 and _levenshtein_distance(na, nb) <= 1:
        if len(na) == len(nb):
            diff_positions = [i for i in range(len(na)) if na[i] != nb[i]]
            if diff_positions:
                pos = diff_positions[0]
                if na[pos].isdigit() and nb[pos].isdigit():
                    return (False, "mismatch")
        return (True, "ocr_fuzzy")

    return (False, "mismatch")


def split_survey_numbers(raw: str) -> list[str]:
    """Split a comma/semicolon-separated list of survey numbers.

    "311/1, 311/2, 312/3A" → ["311/1", "311/2", "312/3A"]

    Soil classification codes from Patta tables ("4-3") are dropped.
    """
    if not raw or not isinstance(raw, str):
        return []
    raw = normalize_tamil_numerals(raw)
    results = []
    for p in re.split(r'[,;]+', raw):
        p = _SURVEY_PREFIXES.sub('', p.strip())
        if not p:
            continue
        if re.match(r'^\d-\d$', p):
            continue
        m = re.match(r'^(\d+[a-zA-Z]?(?:[/\-]\d+[a-zA-Z]?\d*)*)', p)
        results.append(m.group(1) if m else p)
    return results


def any_survey_match(surveys_a: list[str], surveys_b: list[str]) -> tuple[bool, str, str, str]:
    """Check if any survey number in list A matches any in list B.

    Returns (matched, match_type, matched_a, matched_b) for the first match.
    """
    for sa in surveys_a:
        for sb in surveys_b:
            matched, mtype = survey_numbers_match(sa, sb)
            if matched:
                return (True, mtype, sa, sb)
    return (False, "mismatch", "", "")


# ═══════════════════════════════════════════════════
# 2. OPAQUE CROSS-SOURCE TOKENS
# ═══════════════════════════════════════════════════

class SurveyNumber(str):
    """Survey number as printed on a document.

    Kept as an opaque string: equality across documents goes through
    ``matches()``, never through arithmetic on its parts.
    """

    def matches(self, other: str) -> bool:
        candidates = split_survey_numbers(str(other)) or [str(other)]
        mine = split_survey_numbers(str(self)) or [str(self)]
        return any_survey_match(mine, candidates)[0]


_AREA_NUMBER_RE = re.compile(r'\d+(?:[.,]\d+)*')


class AreaText(str):
    """Free-text extent ("2400 Sq. Ft", "0.40.50 Hect").

    Two area texts match when their number tokens agree after dropping
    thousands separators.  Units are not converted.
    """

    def number_tokens(self) -> list[str]:
        text = normalize_tamil_numerals(str(self))
        return [t.replace(",", "") for t in _AREA_NUMBER_RE.findall(text)]

    def matches(self, other: str) -> bool:
        mine = self.number_tokens()
        theirs = AreaText(other).number_tokens()
        if not mine or not theirs:
            return False
        return mine == theirs or set(mine) <= set(theirs) or set(theirs) <= set(mine)


# ═══════════════════════════════════════════════════
# 3. NAME NORMALIZATION & MATCHING
# ═══════════════════════════════════════════════════

_NAME_PREFIX_RE = re.compile(
    r'^(mr\.?|mrs\.?|ms\.?|dr\.?|sri\.?|smt\.?|thiru\.?|thirumathi\.?|'
    r'selvi\.?|selvan\.?|shri\.?|kumari\.?)\s+',
    re.IGNORECASE
)
_RELATION_SPLIT_RE = re.compile(
    r'\b(s/o|d/o|w/o|son of|daughter of|wife of|husband of|c/o|care of)\b',
    re.IGNORECASE,
)
_PARTY_SPLIT_RE = re.compile(
    r'\s*(?:,\s*(?:and|&|மற்றும்)\s+|,\s*|\s+(?:and|&|மற்றும்)\s+)\s*',
    re.IGNORECASE | re.UNICODE,
)


def split_party_names(raw: str) -> list[str]:
    """Split a multi-party name string into individual names.

      "Murugan and Lakshmi"               → ["Murugan", "Lakshmi"]
      "Ram S/o Krishna & Sita D/o Govind" → ["Ram S/o Krishna", "Sita D/o Govind"]
    """
    if not raw or not isinstance(raw, str):
        return []
    parts = _PARTY_SPLIT_RE.split(raw.strip())
    return [p.strip() for p in parts if p and p.strip()]


def split_name_parts(name: str) -> tuple[str, str]:
    """Split a name into (given_name, patronymic/father_name).

    "Murugan S/o Ramamoorthy" → ("murugan", "ramamoorthy")
    "Lakshmi"                 → ("lakshmi", "")
    """
    if not name or not isinstance(name, str):
        return ("", "")
    s = name.strip().lower()
    s = _NAME_PREFIX_RE.sub("", s).strip()
    parts = _RELATION_SPLIT_RE.split(s, maxsplit=1)
    given = " ".join(parts[0].split())
    patronymic = ""
    if len(parts) >= 3:
        patronymic = " ".join(parts[2].split())
    return (given, patronymic)


def normalize_name(name: Any) -> str:
    """Normalize a person name for comparison.

    Strips honorifics, relationship suffixes, single-letter initials
    and punctuation.
    """
    if not name:
        return ""
    given, _ = split_name_parts(str(name))
    s = re.sub(r'\b[a-z]\.\s*', '', given)
    s = re.sub(r'[^\w\s]', ' ', s)
    return re.sub(r'\s+', ' ', s).strip()


def _phonetic_normalize(s: str) -> str:
    """Collapse common Tamil→Latin transliteration divergences in names.

      "Ravee" → "ravi", "Senthil" → "sentil", "Karthik" → "kartik"
    """
    s = s.lower()
    s = s.replace('ch', 's')
    s = s.replace('th', 't')
    s = s.replace('dh', 'd')
    s = s.replace('zh', 'l')
    s = s.replace('sh', 's')
    s = s.replace('w', 'v')
    s = s.replace('ee', 'i')
    s = s.replace('ii', 'i')
    s = s.replace('oo', 'u')
    s = s.replace('uu', 'u')
    s = s.replace('aa', 'a')
    s = re.sub(r'(.)\1+', r'\1', s)  # doubled consonants: "Muthu" / "Mutthu"
    return s


def _name_tokens(name: str) -> tuple[list[str], list[str]]:
    """Return (full_tokens, initials) for the given-name part of ``name``."""
    given, _ = split_name_parts(name)
    given = re.sub(r'[^\w\s]', ' ', given)
    full, initials = [], []
    for tok in given.split():
        if len(tok) == 1:
            initials.append(tok)
        else:
            full.append(tok)
    return full, initials


def _tokens_close(a: str, b: str) -> bool:
    if a == b:
        return True
    pa, pb = _phonetic_normalize(a), _phonetic_normalize(b)
    if pa == pb:
        return True
    return SequenceMatcher(None, pa, pb).ratio() >= 0.8


def initials_compatible(name1: str, name2: str) -> float:
    """Score two names allowing initials and omitted middle names.

    Every full token of the shorter name must correspond to a token of
    the longer one, and every initial must be the first letter of a
    token that is otherwise unmatched.

      "R. Kumar"   vs "Ravi Kumar"         → 0.9
      "Abhishek R" vs "Abhishek Rao"       → 0.9
      "Ravi Kumar" vs "Ravi Shankar Kumar" → 0.9
      "Ravi Kumar" vs "Suresh Babu"        → 0.0
    """
    full1, init1 = _name_tokens(name1)
    full2, init2 = _name_tokens(name2)
    if not full1 or not full2:
        return 0.0

    if len(full1) + len(init1) > len(full2) + len(init2):
        full1, init1, full2, init2 = full2, init2, full1, init1

    unmatched = list(full2)
    for tok in full1:
        hit = next((u for u in unmatched if _tokens_close(tok, u)), None)
        if hit is None:
            return 0.0
        unmatched.remove(hit)

    for initial in init1:
        hit = next((u for u in unmatched if u.startswith(initial)), None)
        if hit is not None:
            unmatched.remove(hit)
        elif initial not in init2:
            return 0.0

    if not unmatched and sorted(init1) == sorted(init2):
        return 1.0
    return 0.9


def base_name_similarity(n1: str, n2: str) -> float:
    """Raw similarity between two given-name fragments (0.0–1.0)."""
    if not n1 or not n2:
        return 0.0
    a, b = normalize_name(n1), normalize_name(n2)
    if not a or not b:
        return 0.0
    if a == b or a.replace(' ', '') == b.replace(' ', ''):
        return 1.0

    tokens1 = set(a.split())
    tokens2 = set(b.split())
    jaccard = len(tokens1 & tokens2) / len(tokens1 | tokens2)
    seq_ratio = SequenceMatcher(None, _phonetic_normalize(a), _phonetic_normalize(b)).ratio()
    token_score = 0.4 * jaccard + 0.6 * seq_ratio
    # Space-collapsed fallback only when token counts differ (OCR
    # space insertion/removal)
    if len(tokens1) != len(tokens2):
        collapsed = SequenceMatcher(None, a.replace(' ', ''), b.replace(' ', '')).ratio()
        token_score = max(token_score, collapsed)
    return max(token_score, initials_compatible(n1, n2))


def name_similarity(name1: str, name2: str) -> float:
    """Compute similarity between two person names (0.0 to 1.0).

    Given name and patronymic are compared separately so that
    "Murugan S/o Ramamoorthy" does not fully match "Murugan S/o Sundaram".

      - both have patronymics: 0.6 × given + 0.4 × patronymic
      - only one has one: given × 0.95
      - neither: given
    """
    g1, p1 = split_name_parts(name1)
    g2, p2 = split_name_parts(name2)
    if not g1 or not g2:
        return 0.0

    given_sim = base_name_similarity(g1, g2)
    if p1 and p2:
        return 0.6 * given_sim + 0.4 * base_name_similarity(p1, p2)
    if p1 or p2:
        return given_sim * 0.95
    return given_sim


def classify_name_match(similarity: float) -> str:
    """Map a deterministic similarity score to MATCHED / PARTIAL / MISMATCH."""
    if similarity >= NAME_MATCH_THRESHOLD:
        return "MATCHED"
    if similarity >= NAME_PARTIAL_THRESHOLD:
        return "PARTIAL"
    return "MISMATCH"


def best_name_match(name: str, candidates: list[str]) -> tuple[float, str]:
    """Return (best_similarity, best_candidate) of ``name`` against ``candidates``."""
    best, best_name = 0.0, ""
    for raw in candidates:
        for cand in split_party_names(raw) or [raw]:
            sim = name_similarity(name, cand)
            if sim > best:
                best, best_name = sim, cand
    return best, best_name


# ═══════════════════════════════════════════════════
# 4. LAND CLASSIFICATION & GOVERNMENT MARKERS
# ═══════════════════════════════════════════════════

LAND_CLASSIFICATIONS = ("Wetland", "Dryland", "Housing", "Unknown")

# Order matters: "Natham Poramboke" is caught by the government scan
# before classification is consulted.
_CLASSIFICATION_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Wetland", re.compile(
        r'nanjai|nanchai|nansey|நஞ்சை|wet\s*land|\bwet\b', re.IGNORECASE)),
    ("Dryland", re.compile(
        r'punjai|punchai|punsey|புஞ்சை|புன்செய்|புன்சை|dry\s*land|\bdry\b', re.IGNORECASE)),
    ("Housing", re.compile(
        r'manaivari|manai\s*vari|மனைவரி|மனை|natham|nattam|நத்தம்|house\s*site|'
        r'housing|residential|\bhouse\b', re.IGNORECASE)),
]

_GOVERNMENT_MARKERS: list[tuple[str, re.Pattern]] = [
    ("Poramboke", re.compile(r'poramboke|porambokku|purambokku|புறம்போக்கு', re.IGNORECASE)),
    ("Sarkar", re.compile(r'sarkar|sircar|சர்க்கார்', re.IGNORECASE)),
    ("Government", re.compile(r'\bgovernment\b|\bgovt\.?(?=\s|$)|அரசு\s*நிலம்|அரசு', re.IGNORECASE)),
    ("Waqf", re.compile(r'\bwaqf\b|\bwakf\b|வக்ஃப்|வக்பு', re.IGNORECASE)),
]

# Every record is issued by the state; the issuer line is not a marker.
_ISSUER_RE = re.compile(
    r'government\s+of\s+tamil\s*nadu|tamil\s*nadu\s+government|'
    r'தமிழ்நாடு\s*அரசு|தமிழக\s*அரசு',
    re.IGNORECASE,
)


def classify_land(*labels: str) -> str:
    """Map land-type labels (English, Tamil, transliterated) to a classification."""
    text = " ".join(l for l in labels if l)
    if not text.strip():
        return "Unknown"
    for canonical in LAND_CLASSIFICATIONS:
        if text.strip().lower() == canonical.lower():
            return canonical
    for canonical, pattern in _CLASSIFICATION_PATTERNS:
        if pattern.search(text):
            return canonical
    return "Unknown"


def find_government_markers(*texts: str) -> list[str]:
    """Return the canonical names of government/commons markers present in ``texts``."""
    text = " ".join(t for t in texts if t)
    text = _ISSUER_RE.sub(" ", text)
    return [name for name, pattern in _GOVERNMENT_MARKERS if pattern.search(text)]
