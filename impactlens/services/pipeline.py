import logging
import uuid
from datetime import timedelta

from ..models.analysis import AnalysisData, parse_analysis
from ..models.records import as_utc, utcnow
from ..utils.errors import ConflictError, ImpactLensError, InvalidInputError, UpstreamError

logger = logging.getLogger(__name__)

MAX_ATTEMPT_ID_LENGTH = 128


def check_attempt_id(attempt_id):
    """Attempt ids end up in query filters, so only short plain strings are accepted."""
    if attempt_id is None:
        return None
    if not isinstance(attempt_id, str) or not attempt_id.strip():
        raise InvalidInputError("attemptId must be a non-empty string")
    if len(attempt_id) > MAX_ATTEMPT_ID_LENGTH:
        raise InvalidInputError(f"attemptId must be at most {MAX_ATTEMPT_ID_LENGTH} characters")
    return attempt_id


class AnalysisPipeline:
    """
    Turns submitted text into stored impacts: fixture lookup or model extraction,
    then article, impacts with their evidence, and a history entry. Each submission
    is keyed by an attempt id so a retried request never stores the analysis twice.
    """

    def __init__(self, article_service, classifier, extractor=None, stale_attempt_minutes=30):
        self.articles = article_service
        self.classifier = classifier
        self.extractor = extractor
        self.stale_after = timedelta(minutes=stale_attempt_minutes)

    def analyze_content(self, content) -> AnalysisData:
        fixture = self.classifier.classify(content)
        if fixture is not None:
            return fixture
        if self.extractor is None:
            raise UpstreamError("Extraction model is not configured")
        logger.info("Using Gemini analysis")
        return self.extractor.extract(content)

    def run(self, content, user_id=None, url=None, attempt_id=None):
        if not content or not str(content).strip():
            raise InvalidInputError("Article content is required")
        attempt_id = check_attempt_id(attempt_id) or uuid.uuid4().hex

        previous = self._previous_attempt(attempt_id, user_id)
        if previous is not None:
            return previous

        logger.info(f"=== Step 1: Parsing article to impacts (attempt {attempt_id}) ===")
        analysis = self.analyze_content(content)

        logger.info("=== Step 2: Storing article and impacts ===")
        article_id = self.articles.create_article(
            title=analysis.article_title,
            content=content,
            url=url or analysis.article_url,
            impacting_entity=analysis.impacting_entity,
            user_id=user_id,
            analysis_id=attempt_id,
        )
        try:
            impact_ids = self.articles.store_analysis(article_id, analysis, analysis_id=attempt_id)

            logger.info("=== Step 3: Storing analysis in history ===")
            self.articles.create_history_entry(
                user_id, article_id, analysis.article_title, len(impact_ids), analysis_id=attempt_id
            )
            self.articles.mark_analysis_complete(article_id)
        except Exception:
            logger.error(f"Analysis {attempt_id} failed after article {article_id} was created", exc_info=True)
            self._compensate(article_id, attempt_id)
            raise

        logger.info(f"=== Analysis {attempt_id} completed successfully ===")
        return {
            "articleId": article_id,
            "attemptId": attempt_id,
            "analysis": analysis.model_dump(),
        }

    def _compensate(self, article_id, attempt_id):
        """Best-effort cleanup; failures are logged and never replace the original error."""
        try:
            logger.info(f"Attempting to delete partial article: {article_id}")
            self.articles.delete_article_only(article_id)
            logger.info("Partial article deleted successfully")
        except ImpactLensError as e:
            logger.error(f"Failed to delete partial article {article_id}: {e}")
        try:
            self.articles.purge_analysis(attempt_id)
        except ImpactLensError as e:
            logger.error(f"Failed to purge documents of analysis {attempt_id}: {e}")

    def _previous_attempt(self, attempt_id, user_id):
        history = self.articles.find_history_by_analysis(attempt_id)
        if history is not None:
            if history.get("userId") != user_id:
                raise ConflictError("Analysis attempt id is already in use")
            return self._replay(attempt_id, history["articleId"])

        article = self.articles.find_article_by_analysis(attempt_id)
        if article is None:
            return None
        if article.get("userId") != user_id:
            raise ConflictError("Analysis attempt id is already in use")
        if article.get("analysis_completed_at") is not None:
            # History entry was deleted, the article itself is complete
            return self._replay(attempt_id, str(article["_id"]))
        if as_utc(article.get("created_at")) > utcnow() - self.stale_after:
            raise ConflictError("Analysis attempt already in progress")
        logger.warning(f"Discarding incomplete analysis {attempt_id} before retrying")
        self.articles.purge_analysis(attempt_id)
        return None

    def _replay(self, attempt_id, article_id):
        logger.info(f"Analysis {attempt_id} already completed, returning stored result")
        return {
            "articleId": article_id,
            "attemptId": attempt_id,
            "analysis": self.stored_analysis(article_id).model_dump(),
        }

    def stored_analysis(self, article_id) -> AnalysisData:
        data = self.articles.get_article_with_impacts(article_id, expand_evidence=True)
        article = data["article"]
        return parse_analysis({
            "article_title": article.get("title"),
            "article_url": article.get("url"),
            "impacting_entity": article.get("impacting_entity"),
            "impacts": [
                {
                    "impacted_entity": impact.get("impacted_entity"),
                    "impact": impact.get("impact"),
                    "score": impact.get("score"),
                    "confidence": impact.get("confidence"),
                    "source": impact.get("source"),
                    "supporting_evidence": [
                        {
                            "description": evidence.get("description"),
                            "source_url": evidence.get("source_url"),
                            "source": evidence.get("source"),
                        }
                        for evidence in impact.get("supporting_evidence", [])
                    ],
                }
                for impact in data["impacts"]
            ],
        })
