"""
Kid-safety classification and light text inference.

The classifier is tri-state:
- any disallow pattern -> FALSE (overrides everything else)
- otherwise any allow pattern -> TRUE
- otherwise -> UNKNOWN

"21+ family trivia night" must come out FALSE, so disallow patterns are
always checked first.
"""

import re
from typing import Optional

from .models import KidAllowed


DISALLOW_PATTERNS = [
    r"(?<![\w$])(?:18|21)\s*\+",  # 21+, 18 +
    r"\b(?:18|21)\s*(?:and|&)\s*(?:over|up|older)\b",
    r"\bover\s*21\b",
    r"\bages?\s*(?:18|21)\s*(?:\+|and\s+up|and\s+over)",
    r"\badults?\s*only\b",
    r"\bgrown[-\s]?ups?\s*only\b",
    r"\bno\s+(?:kids|children|minors)\b",
    r"\bburlesque\b",
    r"\bstrip\s*(?:club|tease|show)\b",
    r"\berotic\b",
    r"\bxxx\b",
    r"\bfetish\b",
    r"\bgentlemen'?s\s*club\b",
    r"\bnude\b",
    r"\bsex\s*show\b",
    r"\bnight\s*club\b",
    r"\b(?:bar|pub)\s*crawl\b",
    r"\b(?:wine|beer|whiskey|whisky|bourbon)\s*tasting\b",
    r"\bbrew\s*fest\b",
    r"\bbeer\s*fest\b",
    r"\bbeerfest\b",
    r"\b(?:cocktail|mixology)\s*class\b",
    r"\bcannabis\b",
    r"\bmarijuana\b",
    r"\b420\b",
]

ALLOW_PATTERNS = [
    r"\bkids?\b",
    r"\bfamily\b",
    r"\bfamilies\b",
    r"\bfamily[-\s]?friendly\b",
    r"\btoddlers?\b",
    r"\bpreschool(?:ers?)?\b",
    r"\bchild(?:ren)?\b",
    r"\ball[-\s]?ages\b",
    r"\byouth\b",
    r"\bteens?\b",
    r"\bstory\s*time\b",
    r"\bpuppet(?:s|ry)?\b",
    r"\bsensory[-\s]friendly\b",
    r"\bparent(?:s|ing)?\b",
    r"\blego\b",
    r"\bhomeschool\b",
    r"\bplaydate\b",
]

_DISALLOW_RE = [re.compile(p, re.IGNORECASE) for p in DISALLOW_PATTERNS]
_ALLOW_RE = [re.compile(p, re.IGNORECASE) for p in ALLOW_PATTERNS]


def matching_disallow_pattern(text: str) -> Optional[str]:
    """Return the first disallow pattern matching the text, if any."""
    for pattern in _DISALLOW_RE:
        if pattern.search(text):
            return pattern.pattern
    return None


def classify_kid_allowed(text: Optional[str]) -> KidAllowed:
    """Classify free text into the tri-state kid-allowed signal."""
    if not text or not text.strip():
        return KidAllowed.UNKNOWN

    if matching_disallow_pattern(text):
        return KidAllowed.FALSE

    if any(pattern.search(text) for pattern in _ALLOW_RE):
        return KidAllowed.TRUE

    return KidAllowed.UNKNOWN


def infer_age_band(text: str) -> Optional[str]:
    """Best-effort age band label from text."""
    t = (text or "").lower()
    if re.search(r"toddler|preschool|baby|babies|under\s*5|ages?\s*0\s*[-–]\s*5", t):
        return "0–5"
    if re.search(r"\bteens?\b|ages?\s*1[3-7]|13\s*[-–]\s*17", t):
        return "13–17"
    if re.search(r"school[-\s]age|elementary|ages?\s*(?:6|7|8)\s*[-–]\s*(?:10|11|12)", t):
        return "6–12"
    if re.search(r"\bkids?\b|children|family|families|all[-\s]?ages", t):
        return "All Ages"
    return None


def infer_indoor_outdoor(text: str) -> Optional[str]:
    """Indoor / Outdoor / Mixed label from venue and title text."""
    t = (text or "").lower()
    outdoor = bool(re.search(r"\bparks?\b|outdoors?|playground|\bfields?\b|garden|trail|beach", t))
    indoor = bool(re.search(r"indoors?|library|museum|theat(?:er|re)|gym|aquarium|community center", t))
    if outdoor and indoor:
        return "Mixed"
    if outdoor:
        return "Outdoor"
    if indoor:
        return "Indoor"
    return None
