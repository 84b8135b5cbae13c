import json

from impactlens.services.classifier import FIXTURES_DIR, ContentClassifier


def _fixture_title(filename):
    with open(FIXTURES_DIR / filename, encoding='utf-8') as f:
        return json.load(f)["article_title"]


def test_tariff_content_returns_tariff_fixture():
    analysis = ContentClassifier().classify("The administration announced a new TARIFF on steel imports.")

    assert analysis is not None
    assert analysis.article_title == _fixture_title("tariff_analysis.json")


def test_healthcare_keywords_are_case_insensitive():
    classifier = ContentClassifier()

    for text in ("Hospitals expand AI in Healthcare pilots", "ai healthcare startups raise funds"):
        analysis = classifier.classify(text)
        assert analysis.article_title == _fixture_title("ai_healthcare_analysis.json")


def test_first_matching_keyword_wins():
    analysis = ContentClassifier().classify("How AI in healthcare is affected by a tariff on chips")

    assert analysis.article_title == _fixture_title("ai_healthcare_analysis.json")


def test_unrecognised_content_falls_through():
    assert ContentClassifier().classify("Local bakery wins regional award") is None
    assert ContentClassifier().classify("") is None


def test_fixtures_are_normalized():
    analysis = ContentClassifier().classify("tariff")

    urls = [e.source_url for impact in analysis.impacts for e in impact.supporting_evidence]
    assert not any("example.com" in url for url in urls)
    for impact in analysis.impacts:
        assert impact.source in ("system", "user")
        assert 0 <= impact.confidence <= 1
        assert impact.user_feedback.thumbs_up == 0


def test_each_call_returns_an_independent_copy():
    classifier = ContentClassifier()
    first = classifier.classify("tariff")
    first.impacts.clear()

    assert len(classifier.classify("tariff").impacts) == 4
