import json
from types import SimpleNamespace

import mongomock
import pytest

from config import TestingConfig
from impactlens import create_app
from impactlens.models.analysis import parse_analysis
from impactlens.utils.auth import issue_token

MODEL_RESPONSE = {
    "article_title": "City Council Approves New Transit Levy",
    "article_url": "",
    "impacting_entity": "City council",
    "impacts": [
        {
            "impacted_entity": "Commuters",
            "impact": "More frequent bus service on major routes.",
            "score": 0.7,
            "confidence": 0.9,
            "source": "system",
            "supporting_evidence": [
                {"description": "Service frequency doubles on six routes.", "source_url": "", "source": "system"},
                {"description": "Night buses return.", "source_url": "https://example.com/night", "source": "system"},
            ],
            "user_feedback": {"thumbs_up": 12, "thumbs_down": 3},
        },
        {
            "impacted_entity": "Property owners",
            "impact": "Higher annual levy on assessed property value.",
            "score": -0.4,
            "supporting_evidence": [
                {"description": "The levy adds 0.2 percent to property tax bills.", "source_url": "https://city.gov/levy"},
            ],
        },
    ],
}


class FakeModels:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        item = self.responses.pop(0) if self.responses else json.dumps(MODEL_RESPONSE)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(text=item)


class FakeGeminiClient:
    """Stands in for google.genai.Client; answers with queued texts or raises queued errors."""

    def __init__(self, *responses):
        self.models = FakeModels(responses)


@pytest.fixture
def db():
    return mongomock.MongoClient().get_database('impactlens_test')


@pytest.fixture
def llm():
    return FakeGeminiClient()


@pytest.fixture
def app(db, llm):
    return create_app(TestingConfig, db=db, llm_client=llm)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def article_service(app):
    return app.extensions['impactlens']['article_service']


@pytest.fixture
def pipeline(app):
    return app.extensions['impactlens']['pipeline']


def bearer(user_id):
    return {"Authorization": f"Bearer {issue_token(user_id, TestingConfig.SECRET_KEY)}"}


@pytest.fixture
def auth_headers():
    return bearer('user-1')


@pytest.fixture
def other_headers():
    return bearer('user-2')


@pytest.fixture
def model_analysis():
    return parse_analysis(json.loads(json.dumps(MODEL_RESPONSE)))


@pytest.fixture
def stored_article(article_service, model_analysis):
    """An article stored the way the pipeline stores one, owned by user-1."""
    article_id = article_service.create_article(
        title=model_analysis.article_title,
        content="First paragraph.\nSecond paragraph.\nThird paragraph.",
        user_id='user-1',
        analysis_id='attempt-stored',
    )
    impact_ids = article_service.store_analysis(article_id, model_analysis, analysis_id='attempt-stored')
    article_service.create_history_entry(
        'user-1', article_id, model_analysis.article_title, len(impact_ids), analysis_id='attempt-stored'
    )
    return {"article_id": article_id, "impact_ids": impact_ids}
