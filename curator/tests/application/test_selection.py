import pytest

from curator.application.selection import (
    analyze_selection,
    generate_selection_options,
    score_candidates,
    select_tracks,
    validate_selection_options,
)
from curator.domain.entities import Rules, SelectionOptions
from curator.domain.errors import RuleViolation, ValidationError
from curator.domain.ports import FixedTimePort, SeededRandomPort
from curator.tests.factories import DAY_MS, NOW_MS, make_track


class TestScoreCandidates:
    def test_formula(self, fixed_time):
        popular = make_track(1, popularity=100)
        unknown = make_track(2)
        scored = score_candidates([popular, unknown], SelectionOptions(count=2), fixed_time)
        # base 0.5 + popularity 1.0 * 0.3 + duration bonus 0.1
        assert scored[0].score == pytest.approx(0.9)
        assert scored[1].score == pytest.approx(0.6)
        assert "popularity" not in scored[1].breakdown

    def test_explicit_zero_popularity_weight_is_honoured(self, fixed_time):
        scored = score_candidates([make_track(1, popularity=100)],
                                  SelectionOptions(count=1, popularity_weight=0.0), fixed_time)
        assert scored[0].breakdown["popularity"] == 0.0

    def test_score_is_clamped(self, fixed_time):
        options = SelectionOptions(count=1, popularity_weight=1.0, recency_boost=1.0,
                                   reference_time_ms=NOW_MS)
        scored = score_candidates([make_track(1, popularity=100)], options, fixed_time)
        assert scored[0].score == 1.0

    def test_recency_boost_decays(self):
        options = SelectionOptions(count=1, recency_boost=0.3, reference_time_ms=NOW_MS - 30 * DAY_MS)
        scored = score_candidates([make_track(1)], options, FixedTimePort(NOW_MS))
        assert scored[0].breakdown["recency"] == pytest.approx(0.3 / 2.718281828, rel=1e-6)


class TestSelectTracks:
    def test_picks_top_count(self, seeded_random, fixed_time):
        tracks = [make_track(n, popularity=n * 10) for n in range(1, 6)]
        result = select_tracks(tracks, Rules(), SelectionOptions(count=2), seeded_random, fixed_time)
        assert [t.id for t in result.selected] == ["t5", "t4"]
        assert len(result.scored) == 5

    def test_empty_candidates(self, seeded_random):
        result = select_tracks([], Rules(), SelectionOptions(count=3), seeded_random)
        assert result.selected == []
        assert result.scored == []

    def test_ties_keep_input_order_without_randomness(self, fixed_time):
        tracks = [make_track(n, popularity=50) for n in range(6)]
        result = select_tracks(tracks, Rules(), SelectionOptions(count=6), SeededRandomPort(1), fixed_time)
        assert result.selected == tracks

    def test_seeded_selection_is_reproducible(self, fixed_time):
        tracks = [make_track(n, popularity=50) for n in range(20)]
        options = SelectionOptions(count=10, randomness_factor=0.5)

        first = select_tracks(tracks, Rules(), options, SeededRandomPort(99), fixed_time)
        second = select_tracks(tracks, Rules(), options, SeededRandomPort(99), fixed_time)

        assert first.selected == second.selected
        assert len(first.selected) == 10

    def test_diversity_penalises_repeated_artists(self, seeded_random, fixed_time):
        tracks = [
            make_track(1, artist="A", popularity=100),
            make_track(2, artist="A", popularity=90),
            make_track(3, artist="B", popularity=80),
        ]
        options = SelectionOptions(count=2, diversity_factor=1.0)
        result = select_tracks(tracks, Rules(), options, seeded_random, fixed_time)

        assert [t.id for t in result.selected] == ["t1", "t3"]
        penalised = next(s for s in result.scored if s.track.id == "t2")
        assert penalised.breakdown["diversity"] == pytest.approx(-0.1)

    def test_invalid_options_rejected_first(self, seeded_random):
        with pytest.raises(ValidationError):
            select_tracks([], Rules(), SelectionOptions(count=0), seeded_random)

    def test_invalid_rules_rejected(self, seeded_random):
        with pytest.raises(RuleViolation):
            select_tracks([make_track(1)], Rules(max_tracks=-1), SelectionOptions(count=1), seeded_random)


def test_validate_selection_options_lists_violations():
    with pytest.raises(ValidationError) as exc_info:
        validate_selection_options(SelectionOptions(count=1, randomness_factor=2, diversity_factor=-1))
    assert len(exc_info.value.meta["violations"]) == 2


def test_analyze_selection(fixed_time):
    tracks = [make_track(1, popularity=100), make_track(2), make_track(3, popularity=0)]
    analysis = analyze_selection(tracks, SelectionOptions(count=5), fixed_time)
    assert analysis.total_candidates == 3
    assert analysis.available_count == 3
    assert analysis.score_distribution.max == pytest.approx(0.9)
    assert analysis.score_distribution.median == pytest.approx(0.6)
    assert analysis.to_json()["scoreDistribution"]["min"] == pytest.approx(0.6)

    empty = analyze_selection([], SelectionOptions(count=5), fixed_time)
    assert empty.available_count == 0


def test_generate_selection_options():
    options = generate_selection_options(Rules(max_tracks=12), favor_recent=True, allow_randomness=True)
    assert options.count == 12
    assert options.recency_boost == 0.3
    assert options.randomness_factor == 0.2
    assert generate_selection_options(Rules()).count == 50
