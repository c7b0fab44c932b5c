from typing import List, Optional, Sequence

from curator.domain.entities import SearchIntent, YearRange
from curator.domain.errors import ValidationError


MIN_LIMIT = 1
MAX_LIMIT = 50


def _clean_list(values: Optional[Sequence[str]], lower: bool = False) -> Optional[tuple]:
    if not values:
        return None
    cleaned: List[str] = []
    for value in values:
        if not isinstance(value, str):
            raise ValidationError("Search terms must be strings", {"value": value})
        value = value.strip()
        if lower:
            value = value.lower()
        if value and value not in cleaned:
            cleaned.append(value)
    return tuple(cleaned) or None


def normalize_search_intent(intent: SearchIntent) -> SearchIntent:
    """Canonicalize a search intent for adapter consumption.

    Clamping ``limit`` to [1, 50] and flooring ``offset`` at 0 are the only
    silent corrections; any other bad value raises ValidationError.
    """
    query = intent.query.strip() if intent.query else None

    year = intent.year
    if year is not None and (isinstance(year, bool) or not isinstance(year, int) or year < 0):
        raise ValidationError(f"Invalid year: {year}", {"year": year})

    year_range = None
    if not year and intent.year_range:
        if intent.year_range.min > intent.year_range.max:
            raise ValidationError(
                "Year range min cannot be greater than max",
                {"yearRange": intent.year_range.to_json()},
            )
        year_range = YearRange(min=intent.year_range.min, max=intent.year_range.max)

    try:
        limit = intent.limit
        if limit is not None:
            limit = max(MIN_LIMIT, min(MAX_LIMIT, int(limit)))
        offset = intent.offset
        if offset is not None:
            offset = max(0, int(offset))
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers",
                              {"limit": intent.limit, "offset": intent.offset})

    return SearchIntent(
        query=query or None,
        genres=_clean_list(intent.genres, lower=True),
        artists=_clean_list(intent.artists),
        albums=_clean_list(intent.albums),
        year=year or None,
        year_range=year_range,
        limit=limit,
        offset=offset,
    )


def merge_search_intents(*intents: SearchIntent) -> SearchIntent:
    """Merge intents left to right and normalize the result.

    Queries concatenate, lists union, a year overrides any range, ranges
    intersect (an empty intersection is dropped) and pagination is last-wins.
    """
    query = None
    genres: List[str] = []
    artists: List[str] = []
    albums: List[str] = []
    year = None
    year_range = None
    limit = None
    offset = None

    for intent in intents:
        if intent.query:
            query = f"{query} {intent.query}" if query else intent.query
        genres.extend(intent.genres or ())
        artists.extend(intent.artists or ())
        albums.extend(intent.albums or ())

        if intent.year:
            year = intent.year
            year_range = None
        elif intent.year_range and not year:
            if year_range:
                year_range = YearRange(
                    min=max(year_range.min, intent.year_range.min),
                    max=min(year_range.max, intent.year_range.max),
                )
                if year_range.min > year_range.max:
                    year_range = None
            else:
                year_range = intent.year_range

        if intent.limit is not None:
            limit = intent.limit
        if intent.offset is not None:
            offset = intent.offset

    return normalize_search_intent(SearchIntent(
        query=query,
        genres=genres or None,
        artists=artists or None,
        albums=albums or None,
        year=year,
        year_range=year_range,
        limit=limit,
        offset=offset,
    ))


def _or_clause(field_name: str, values: Sequence[str]) -> str:
    return f"{field_name}:" + " OR ".join(f'"{v}"' for v in values)


def search_intent_to_query(intent: SearchIntent) -> str:
    """Render an intent as a catalog search query string."""
    parts: List[str] = []
    if intent.query:
        parts.append(intent.query)
    if intent.genres:
        parts.append(_or_clause("genre", intent.genres))
    if intent.artists:
        parts.append(_or_clause("artist", intent.artists))
    if intent.albums:
        parts.append(_or_clause("album", intent.albums))
    if intent.year:
        parts.append(f"year:{intent.year}")
    elif intent.year_range:
        parts.append(f"year:{intent.year_range.min}-{intent.year_range.max}")
    return " ".join(parts)
