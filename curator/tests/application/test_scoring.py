import pytest

from curator.application.scoring import (
    DEFAULT_SCORING_WEIGHTS,
    ScoringWeights,
    calculate_diversity_score,
    generate_scoring_weights,
    normalize_scores,
    score_track,
    score_track_collection,
)
from curator.domain.entities import ScoredTrack
from curator.tests.factories import DAY_MS, NOW_MS, make_track


class TestScoreTrack:
    def test_popularity_and_duration_components(self):
        scored = score_track(make_track(1, popularity=50, duration_ms=210_000))
        assert scored.breakdown["popularity"] == pytest.approx(0.15)
        # 3.5 minutes is the preferred length
        assert scored.breakdown["duration"] == pytest.approx(0.1)
        assert scored.score == pytest.approx(0.25)

    def test_explicit_penalty(self):
        clean = score_track(make_track(1, popularity=50, explicit=False))
        explicit = score_track(make_track(1, popularity=50, explicit=True))
        assert explicit.score == pytest.approx(clean.score - 0.1)
        assert explicit.breakdown["explicit"] == -0.1

    def test_score_is_floored_at_zero(self):
        weights = ScoringWeights(explicit=-5.0)
        assert score_track(make_track(1, explicit=True), weights=weights).score == 0.0

    def test_recency_decays(self):
        fresh = score_track(make_track(1), reference_time_ms=NOW_MS, now_ms=NOW_MS)
        stale = score_track(make_track(1), reference_time_ms=NOW_MS - 60 * DAY_MS, now_ms=NOW_MS)
        assert fresh.breakdown["recency"] == pytest.approx(0.2)
        assert stale.breakdown["recency"] < fresh.breakdown["recency"]

    def test_artist_diversity_uses_seen_context(self):
        track = make_track(1, artist="A")
        assert score_track(track, seen_artists=set()).breakdown["artistDiversity"] == pytest.approx(0.2)
        assert score_track(track, seen_artists={"A"}).breakdown["artistDiversity"] == 0.0
        assert "artistDiversity" not in score_track(track).breakdown

    def test_out_of_range_durations(self):
        short = score_track(make_track(1, duration_ms=60_000))
        long = score_track(make_track(2, duration_ms=600_000))
        assert short.breakdown["duration"] == pytest.approx(0.03)
        assert long.breakdown["duration"] == pytest.approx(0.01)


def test_collection_ranks_by_descending_score():
    tracks = [
        make_track(1, artist="A", popularity=10),
        make_track(2, artist="A", popularity=90),
        make_track(3, artist="B", popularity=50),
    ]
    ranked = score_track_collection(tracks)
    assert [s.rank for s in ranked] == [1, 2, 3]
    assert ranked[0].score >= ranked[1].score >= ranked[2].score
    # second "A" track does not get the diversity bonus
    second_a = next(s for s in ranked if s.track.id == "t2")
    assert second_a.breakdown["artistDiversity"] == 0.0


def test_normalize_scores():
    items = [ScoredTrack(track=make_track(n), score=s) for n, s in enumerate([0.2, 0.6, 1.0])]
    assert [s.score for s in normalize_scores(items)] == pytest.approx([0.0, 0.5, 1.0])
    same = [ScoredTrack(track=make_track(n), score=0.4) for n in range(2)]
    assert [s.score for s in normalize_scores(same)] == [1.0, 1.0]
    assert normalize_scores([]) == []


def test_diversity_score():
    assert calculate_diversity_score([]).overall_diversity == 0.0
    uniform = calculate_diversity_score([make_track(1, artist="A"), make_track(2, artist="A")])
    varied = calculate_diversity_score([
        make_track(1, artist="A", duration_ms=100_000, popularity=10),
        make_track(2, artist="B", duration_ms=300_000, popularity=90),
    ])
    assert uniform.artist_diversity == 0.5
    assert uniform.duration_diversity == 0.0
    assert varied.overall_diversity > uniform.overall_diversity
    assert set(varied.to_json()) == {"artistDiversity", "durationDiversity", "popularityDiversity",
                                     "overallDiversity"}


def test_generate_scoring_weights():
    assert generate_scoring_weights() == DEFAULT_SCORING_WEIGHTS
    popular = generate_scoring_weights(favor_popular=True)
    assert popular.popularity == 0.5
    assert popular.recency == 0.1
    assert generate_scoring_weights(allow_explicit=False).explicit == -0.3
    assert generate_scoring_weights(allow_explicit=True).explicit == 0.0
    assert generate_scoring_weights(prefer_length="short").duration == 0.2


def test_weights_from_partial_json():
    weights = ScoringWeights.from_json({"popularity": 0.9, "artistDiversity": 0.0, "bogus": 1})
    assert weights.popularity == 0.9
    assert weights.artist_diversity == 0.0
    assert weights.recency == DEFAULT_SCORING_WEIGHTS.recency
