import pytest

from curator.domain.errors import ValidationError
from curator.tests.factories import make_track


def test_normalize_string_basic_cases():
    from curator.domain.normalization import normalize_string

    assert normalize_string("Hello World") == "hello world"
    assert normalize_string("Héllo Wörld!") == "hello world"
    assert normalize_string("  many   spaces_here ") == "many spaces here"
    assert normalize_string("") == ""


def test_normalize_artist_name_drops_articles_and_suffixes():
    from curator.domain.normalization import normalize_artist_name

    assert normalize_artist_name("The Beatles") == "beatles"
    assert normalize_artist_name("Hank Williams Jr") == "hank williams"


def test_normalize_track_name_strips_tails():
    from curator.domain.normalization import normalize_track_name

    assert normalize_track_name("Song (Live)") == "song"
    assert normalize_track_name("Song [Radio Edit]") == "song"
    assert normalize_track_name("Song - 2011 Remaster") == "song"


def test_normalize_artists_joined_is_order_insensitive():
    from curator.domain.normalization import normalize_artists_joined

    assert normalize_artists_joined(["B", "a"]) == normalize_artists_joined(["A", "b"])


def test_normalize_genre_aliases():
    from curator.domain.normalization import normalize_genre

    assert normalize_genre("Hip-Hop") == "hiphop"
    assert normalize_genre("Drum & Bass") == "drumandbass"
    assert normalize_genre("Rock") == "rock"


@pytest.mark.parametrize("value, expected", [
    (180000, 180000),
    ("3:30", 210000),
    ("3 min 5 sec", 185000),
    ("2 minutes", 120000),
    ("1500", 1500),
    ("soon", 0),
    (-5, 0),
])
def test_normalize_duration(value, expected):
    from curator.domain.normalization import normalize_duration

    assert normalize_duration(value) == expected


def test_normalize_popularity_clamps():
    from curator.domain.normalization import normalize_popularity

    assert normalize_popularity(150) == 100
    assert normalize_popularity(-3) == 0
    assert normalize_popularity("42.6") == 43
    assert normalize_popularity(None) == 0
    assert normalize_popularity(float("nan")) == 0


def test_normalize_uri_accepts_urls_and_uris():
    from curator.domain.normalization import extract_id, is_valid_uri, normalize_uri

    assert normalize_uri("https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC?si=x") == \
        "spotify:track:4uLU6hMCjMI75M1A2tKUQC"
    assert normalize_uri("Spotify:Track:abc123") == "spotify:track:abc123"
    assert extract_id("spotify:album:xyz") == "xyz"
    assert is_valid_uri("spotify:playlist:p1")
    assert not is_valid_uri("spotify:show:p1")


def test_normalize_uri_rejects_garbage():
    from curator.domain.normalization import normalize_uri

    with pytest.raises(ValidationError):
        normalize_uri("not a uri")
    with pytest.raises(ValidationError):
        normalize_uri("")


def test_extract_year():
    from curator.domain.normalization import extract_year

    assert extract_year("1999-05-01", current_year=2024) == 1999
    assert extract_year("released 2030", current_year=2024) is None
    assert extract_year("no year", current_year=2024) is None


def test_normalize_string_array_dedupes_after_normalizing():
    from curator.domain.normalization import normalize_string_array

    assert normalize_string_array(["Rock", "rock!", "", "Jazz"]) == ["rock", "jazz"]


def test_create_search_key_ignores_version_tails():
    from curator.domain.normalization import create_search_key

    a = make_track(1, artist="The Band", name="Song (Live)", duration_ms=200_400)
    b = make_track(2, artist="Band", name="Song", duration_ms=199_600)
    assert create_search_key(a) == create_search_key(b)
