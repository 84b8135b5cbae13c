import pytest

from impactlens.models.analysis import DEFAULT_CONFIDENCE, is_placeholder_url, parse_analysis
from impactlens.utils.errors import MalformedResponseError, UpstreamError


def _payload(**impact_fields):
    impact = {"impacted_entity": "Farmers", "impact": "Lower export demand", "score": -0.5}
    impact.update(impact_fields)
    return {"article_title": "Trade dispute", "impacts": [impact]}


class TestImpactNormalization:
    def test_missing_optional_fields_get_defaults(self):
        impact = parse_analysis(_payload()).impacts[0]

        assert impact.source == "system"
        assert impact.confidence == DEFAULT_CONFIDENCE
        assert impact.supporting_evidence == []
        assert impact.user_feedback.thumbs_up == 0
        assert impact.user_feedback.thumbs_down == 0

    def test_null_confidence_and_evidence_are_defaulted(self):
        impact = parse_analysis(_payload(confidence=None, supporting_evidence=None)).impacts[0]

        assert impact.confidence == DEFAULT_CONFIDENCE
        assert impact.supporting_evidence == []

    def test_model_supplied_feedback_is_ignored(self):
        impact = parse_analysis(_payload(user_feedback={"thumbs_up": 40, "thumbs_down": 7})).impacts[0]

        assert impact.user_feedback.model_dump() == {"thumbs_up": 0, "thumbs_down": 0}

    def test_unknown_source_falls_back_to_system(self):
        assert parse_analysis(_payload(source="gpt-4")).impacts[0].source == "system"
        assert parse_analysis(_payload(source="user")).impacts[0].source == "user"

    def test_scores_are_clamped_to_their_ranges(self):
        impact = parse_analysis(_payload(score=-3, confidence=1.7)).impacts[0]

        assert impact.score == -1.0
        assert impact.confidence == 1.0

    def test_placeholder_evidence_urls_are_blanked(self):
        evidence = [
            {"description": "a", "source_url": "https://example.com/report"},
            {"description": "b", "source_url": "http://news.example.org/x"},
            {"description": "c", "source_url": "https://www.reuters.com/article"},
            {"description": "d"},
        ]
        impact = parse_analysis(_payload(supporting_evidence=evidence)).impacts[0]

        assert [e.source_url for e in impact.supporting_evidence] == ["", "", "https://www.reuters.com/article", ""]
        assert all(e.source == "system" for e in impact.supporting_evidence)

    def test_evidence_without_description_is_kept(self):
        evidence = [
            {"description": "Exports fall.", "source_url": "https://usda.gov/exports"},
            {"source_url": "https://usda.gov/prices"},
            {"description": None},
        ]
        impact = parse_analysis(_payload(supporting_evidence=evidence)).impacts[0]

        assert [e.description for e in impact.supporting_evidence] == ["Exports fall.", "", ""]
        assert impact.supporting_evidence[1].source_url == "https://usda.gov/prices"


class TestMalformedPayloads:
    def test_missing_title(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis({"impacts": []})

    def test_impacts_must_be_a_list(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis({"article_title": "x", "impacts": {"impacted_entity": "y"}})

    def test_not_an_object(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis(["article_title"])

    def test_impact_without_score(self):
        payload = {"article_title": "x", "impacts": [{"impacted_entity": "y", "impact": "z"}]}
        with pytest.raises(MalformedResponseError):
            parse_analysis(payload)

    def test_malformed_response_is_an_upstream_failure(self):
        assert issubclass(MalformedResponseError, UpstreamError)


@pytest.mark.parametrize("url, expected", [
    ("https://example.com", True),
    ("https://example.com/some/path", True),
    ("http://www.example.net/a", True),
    ("https://notexample.com/a", False),
    ("https://example.community/a", False),
    ("", False),
    (None, False),
])
def test_is_placeholder_url(url, expected):
    assert is_placeholder_url(url) is expected
