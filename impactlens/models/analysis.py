from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utils.errors import MalformedResponseError

DEFAULT_CONFIDENCE = 0.8
IMPACT_SOURCES = ("system", "user")
PLACEHOLDER_HOSTS = ("example.com", "example.org", "example.net")


def is_placeholder_url(url: Optional[str]) -> bool:
    """True for example.* links the model invents instead of citing a real page."""
    if not url:
        return False
    host = (urlparse(url.strip()).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in PLACEHOLDER_HOSTS)


def clean_source_url(url: Optional[str]) -> str:
    if not url or is_placeholder_url(url):
        return ""
    return url.strip()


class UserFeedback(BaseModel):
    thumbs_up: int = 0
    thumbs_down: int = 0


class EvidenceData(BaseModel):
    description: str = ""
    source_url: str = ""
    source: str = "system"
    model_config = ConfigDict(extra="ignore")

    @field_validator("description", mode="before")
    @classmethod
    def _empty_description_for_null(cls, value):
        return "" if value is None else value

    @field_validator("source_url", mode="before")
    @classmethod
    def _drop_placeholder_url(cls, value):
        return clean_source_url(value)

    @field_validator("source", mode="before")
    @classmethod
    def _default_source(cls, value):
        return value or "system"


class ImpactData(BaseModel):
    impacted_entity: str
    impact: str
    score: float
    confidence: Optional[float] = DEFAULT_CONFIDENCE
    source: str = "system"
    supporting_evidence: list[EvidenceData] = Field(default_factory=list)
    user_feedback: UserFeedback = Field(default_factory=UserFeedback)
    model_config = ConfigDict(extra="ignore")

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, value):
        return min(1.0, max(-1.0, value))

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, value):
        return DEFAULT_CONFIDENCE if value is None else value

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value):
        return min(1.0, max(0.0, value))

    @field_validator("source", mode="before")
    @classmethod
    def _known_source(cls, value):
        return value if value in IMPACT_SOURCES else "system"

    @field_validator("supporting_evidence", mode="before")
    @classmethod
    def _default_evidence(cls, value):
        return value or []

    @field_validator("user_feedback", mode="before")
    @classmethod
    def _reset_feedback(cls, value):
        # Counters only ever come from user votes
        return {}


class AnalysisData(BaseModel):
    article_title: str
    article_url: str = ""
    impacting_entity: str = ""
    impacts: list[ImpactData]
    model_config = ConfigDict(extra="ignore")

    @field_validator("article_url", "impacting_entity", mode="before")
    @classmethod
    def _empty_string_for_null(cls, value):
        return value or ""


def parse_analysis(payload) -> AnalysisData:
    """Validate a decoded analysis payload and back-fill optional fields."""
    if not isinstance(payload, dict):
        raise MalformedResponseError(details="Expected a JSON object")
    if not payload.get("article_title"):
        raise MalformedResponseError(details="Missing 'article_title'")
    if not isinstance(payload.get("impacts"), list):
        raise MalformedResponseError(details="Missing 'impacts' array")
    try:
        return AnalysisData.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(details=str(e)) from e
