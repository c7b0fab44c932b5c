from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Iterable, List, Optional, Union

from .entities import TrackRef
from .errors import ValidationError


_FEAT_PATTERN = re.compile(r"\b(feat\.?|ft\.)\s", re.IGNORECASE)
_PARENS_CONTENT_PATTERN = re.compile(r"\s*[\(\[\{][^\)\]\}]*[\)\]\}]\s*")
_REMASTER_TAIL_PATTERN = re.compile(r"\s+-\s+(\d{4}\s+)?remaster.*$", re.IGNORECASE)
# Keep all unicode word characters and spaces; strip punctuation/symbols. Then remove underscores separately.
_NON_WORD_SPACE_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
_MULTISPACE_PATTERN = re.compile(r"\s+")
_LEADING_ARTICLE_PATTERN = re.compile(r"^(the|a|an)\s+")
_GENERATIONAL_SUFFIX_PATTERN = re.compile(r"\s+(jr|sr|ii|iii|iv)$")
_URI_PATTERN = re.compile(r"^[a-z][a-z0-9]*:(track|album|playlist|artist):[A-Za-z0-9]+$")
_URL_PATTERN = re.compile(r"spotify\.com/(track|album|playlist|artist)/([A-Za-z0-9]+)")
_COLON_DURATION_PATTERN = re.compile(r"^(\d+):(\d{1,2})$")
_MINUTES_PATTERN = re.compile(r"(\d+)\s*(?:min|minutes?)\b")
_SECONDS_PATTERN = re.compile(r"(\d+)\s*(?:sec|seconds?)\b")
_YEAR_PATTERNS = (
    re.compile(r"(\d{4})-\d{2}-\d{2}"),
    re.compile(r"(\d{4})/\d{2}/\d{2}"),
    re.compile(r"(\d{4})"),
)

_GENRE_ALIASES = {
    "hip hop": "hiphop",
    "hiphop": "hiphop",
    "r and b": "rnb",
    "drum and bass": "drumandbass",
    "drum n bass": "drumandbass",
    "dnb": "drumandbass",
    "electronic dance music": "edm",
    "dance music": "dance",
}


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_string(value: str) -> str:
    """Lower-case, strip diacritics and punctuation, collapse whitespace."""
    value = value or ""
    value = _strip_diacritics(value)
    value = value.lower()
    value = _NON_WORD_SPACE_PATTERN.sub("", value)
    # Replace underscores that \w preserved
    value = value.replace("_", " ")
    value = _MULTISPACE_PATTERN.sub(" ", value).strip()
    return value


def normalize_artist_name(name: str) -> str:
    """Normalize an artist name, dropping leading articles and generational suffixes."""
    normalized = normalize_string(name)
    normalized = _LEADING_ARTICLE_PATTERN.sub("", normalized)
    normalized = _GENERATIONAL_SUFFIX_PATTERN.sub("", normalized)
    return normalized


def normalize_track_name(name: str) -> str:
    """Normalize a track title, dropping featured-artist markers, bracketed and remaster tails."""
    value = name or ""
    value = _REMASTER_TAIL_PATTERN.sub("", value)
    value = _FEAT_PATTERN.sub(" ", value)
    # Remove parenthetical/bracketed content entirely
    while True:
        new_value = _PARENS_CONTENT_PATTERN.sub(" ", value)
        if new_value == value:
            break
        value = new_value
    return normalize_string(value)


def normalize_artists_joined(artists: Iterable[str], separator: str = ",") -> str:
    normalized = sorted(normalize_string(a) for a in artists if a)
    return separator.join(n for n in normalized if n)


def normalize_genre(genre: str) -> str:
    normalized = normalize_string(genre.replace("&", " and ").replace("-", " "))
    return _GENRE_ALIASES.get(normalized, normalized)


def normalize_duration(duration: Union[int, float, str]) -> int:
    """Coerce a duration to milliseconds.

    Accepts a number (assumed ms), ``"M:SS"``, ``"N min M sec"`` or a numeric
    string. Unparsable input yields 0.
    """
    if isinstance(duration, (int, float)) and not isinstance(duration, bool):
        return max(0, int(duration))

    text = str(duration).strip().lower()

    colon_match = _COLON_DURATION_PATTERN.match(text)
    if colon_match:
        minutes, seconds = int(colon_match.group(1)), int(colon_match.group(2))
        return (minutes * 60 + seconds) * 1000

    total_ms = 0
    minutes_match = _MINUTES_PATTERN.search(text)
    seconds_match = _SECONDS_PATTERN.search(text)
    if minutes_match:
        total_ms += int(minutes_match.group(1)) * 60 * 1000
    if seconds_match:
        total_ms += int(seconds_match.group(1)) * 1000
    if total_ms > 0:
        return total_ms

    try:
        return max(0, int(float(text)))
    except ValueError:
        return 0


def normalize_popularity(popularity: Union[int, float, str, None]) -> int:
    try:
        score = float(popularity)
    except (TypeError, ValueError):
        return 0
    if score != score:  # NaN
        return 0
    return max(0, min(100, int(round(score))))


def is_valid_uri(uri: Optional[str]) -> bool:
    return bool(uri) and _URI_PATTERN.match(uri) is not None


def normalize_uri(uri: str) -> str:
    """Return the canonical ``spotify:<kind>:<id>`` form of a URI or open.spotify.com URL."""
    if not uri:
        raise ValidationError("URI is required", {"uri": uri})
    if ":" in uri and not uri.startswith(("http://", "https://")):
        parts = uri.split(":")
        if len(parts) == 3:
            candidate = f"{parts[0].lower()}:{parts[1].lower()}:{parts[2]}"
            if is_valid_uri(candidate):
                return candidate
        raise ValidationError(f"Invalid URI: {uri}", {"uri": uri})
    url_match = _URL_PATTERN.search(uri)
    if url_match:
        return f"spotify:{url_match.group(1)}:{url_match.group(2)}"
    raise ValidationError(f"Invalid URI: {uri}", {"uri": uri})


def extract_id(uri: str) -> str:
    return normalize_uri(uri).split(":")[2]


def extract_year(text: str, current_year: Optional[int] = None) -> Optional[int]:
    """Extract the first plausible release year from a date-ish string."""
    if current_year is None:
        current_year = datetime.now().year
    for pattern in _YEAR_PATTERNS:
        match = pattern.search(text or "")
        if match:
            year = int(match.group(1))
            if 1900 <= year <= current_year + 1:
                return year
    return None


def normalize_string_array(values: Iterable[str]) -> List[str]:
    result: List[str] = []
    for value in values or []:
        normalized = normalize_string(value)
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def create_search_key(track: TrackRef) -> str:
    name = normalize_track_name(track.name)
    artists = "|".join(sorted(normalize_artist_name(a) for a in track.artists))
    seconds = round(track.duration_ms / 1000) if track.duration_ms else ""
    return f"{name}::{artists}::{seconds}"
