from datetime import datetime, timezone
from numbers import Real

from flask import Blueprint, current_app, g, jsonify, request

from ..models.analysis import IMPACT_SOURCES
from ..models.records import VOTE_FIELDS
from ..services.article_service import ArticleService
from ..services.classifier import ContentClassifier
from ..services.pipeline import AnalysisPipeline
from ..tasks.analyzer import GeminiImpactExtractor
from ..utils.auth import authenticate_request
from ..utils.errors import ImpactLensError, InvalidInputError

# Initialize the blueprint
main_bp = Blueprint('main', __name__)
main_bp.before_request(authenticate_request)


def init_route_dependencies(app, db, llm_client=None):
    """Build the services the routes use and attach them to the application."""
    if db is None:
        app.logger.error("Database connection not initialized")
        raise RuntimeError("Database connection not initialized")

    article_service = ArticleService(db, max_workers=app.config.get('WRITER_MAX_WORKERS', 4))
    extractor = None
    if llm_client is not None:
        extractor = GeminiImpactExtractor(llm_client, model_name=app.config.get('GEMINI_MODEL'))
    else:
        app.logger.warning("No Gemini client configured; only fixture topics can be analyzed")

    pipeline = AnalysisPipeline(
        article_service,
        ContentClassifier(),
        extractor,
        stale_attempt_minutes=app.config.get('ORPHAN_GRACE_MINUTES', 30),
    )
    app.extensions['impactlens'] = {
        'db': db,
        'article_service': article_service,
        'pipeline': pipeline,
    }


def _article_service() -> ArticleService:
    return current_app.extensions['impactlens']['article_service']


def _pipeline() -> AnalysisPipeline:
    return current_app.extensions['impactlens']['pipeline']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInputError("Request must be a JSON object")
    return data


def _is_number(value):
    return isinstance(value, Real) and not isinstance(value, bool)


def _vote_type(data):
    vote_type = data.get('voteType')
    if vote_type not in VOTE_FIELDS:
        raise InvalidInputError("Invalid vote type. Must be 'up' or 'down'")
    return vote_type


def _summary(content):
    """First two paragraphs, cut to 100 characters."""
    return ' '.join((content or '').split('\n')[:2])[:100] + '...'


@main_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    try:
        current_app.extensions['impactlens']['db'].command('ping')
        mongo_status = "connected"
    except Exception as e:
        mongo_status = f"disconnected: {e}"

    google_api_key_status = "present" if current_app.config.get('GOOGLE_API_KEY') else "missing"

    return jsonify({
        "status": "ok",
        "message": "ImpactLens Backend is healthy!",
        "dependencies": {
            "mongodb": mongo_status,
            "google_ai_key": google_api_key_status
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }), 200


@main_bp.route('/analyze', methods=['POST'])
def analyze_article():
    """
    Extract impacts from submitted article text and store them.
    Expects JSON body: {"content": "...", "url": "...", "attemptId": "..."}; only content is required.
    """
    data = _json_body()
    content = data.get('content')
    if not isinstance(content, str) or not content.strip():
        raise InvalidInputError("Article content is required")
    url = data.get('url')
    if url is not None and not isinstance(url, str):
        raise InvalidInputError("url must be a string")

    result = _pipeline().run(
        content,
        user_id=g.user_id,
        url=url,
        attempt_id=data.get('attemptId'),
    )
    return jsonify(result), 200


@main_bp.route('/articles/<article_id>', methods=['GET'])
def get_article_detail(article_id):
    """
    Retrieve an article with its impacts. Pass ?expand=evidence to resolve
    each impact's evidence ids.
    """
    expand_evidence = request.args.get('expand', type=str) == 'evidence'
    data = _article_service().get_article_with_impacts(article_id, expand_evidence=expand_evidence)
    data['article']['summary'] = _summary(data['article'].get('content'))
    return jsonify(data), 200


@main_bp.route('/articles/<article_id>', methods=['DELETE'])
def delete_article(article_id):
    """Delete an article with its impacts, evidence and history entries."""
    _article_service().delete_article(article_id, user_id=g.user_id)
    return jsonify({"success": True}), 200


@main_bp.route('/articles/<article_id>/impacts/<impact_id>/vote', methods=['POST'])
def vote_on_article_impact(article_id, impact_id):
    """Vote on an impact after checking that it belongs to the article."""
    vote_type = _vote_type(_json_body())
    impact = _article_service().vote(impact_id, vote_type, article_id=article_id)
    return jsonify({"success": True, "impact": impact}), 200


@main_bp.route('/impacts', methods=['POST'])
def create_impact():
    """
    Add an impact to an existing article.
    Expects JSON body: {"articleId", "impactedEntity", "impact", "score", "confidence"?, "source"?}
    """
    data = _json_body()
    article_id = data.get('articleId')
    impacted_entity = data.get('impactedEntity')
    impact = data.get('impact')
    score = data.get('score')
    confidence = data.get('confidence')

    missing = [
        name for name, ok in (
            ('articleId', bool(article_id)),
            ('impactedEntity', bool(impacted_entity)),
            ('impact', bool(impact)),
            ('score', _is_number(score)),
        ) if not ok
    ]
    if missing:
        raise InvalidInputError("Missing required fields", details={"missing": missing})
    if not -1 <= score <= 1:
        raise InvalidInputError("Score must be between -1 and 1")
    if confidence is not None and (not _is_number(confidence) or not 0 <= confidence <= 1):
        raise InvalidInputError("Confidence must be between 0 and 1")

    source = data.get('source') if data.get('source') in IMPACT_SOURCES else 'user'
    new_impact = _article_service().create_impact(
        str(article_id), impacted_entity, impact, score, confidence, source
    )
    return jsonify(new_impact), 200


@main_bp.route('/impacts/<impact_id>/vote', methods=['POST'])
def vote_on_impact(impact_id):
    """Expects JSON body: {"voteType": "up" | "down"}"""
    vote_type = _vote_type(_json_body())
    _article_service().vote(impact_id, vote_type)
    return jsonify({"success": True}), 200


@main_bp.route('/impacts/<impact_id>/evidence', methods=['GET'])
def get_impact_evidence(impact_id):
    evidence = _article_service().get_evidence_for_impact(impact_id)
    return jsonify({"evidence": evidence}), 200


@main_bp.route('/evidence', methods=['POST'])
def add_evidence():
    """Expects JSON body: {"impactId", "description", "sourceUrl"?}"""
    data = _json_body()
    impact_id = data.get('impactId')
    description = data.get('description')
    if not impact_id or not description:
        raise InvalidInputError("Impact ID and description are required")

    evidence = _article_service().add_evidence(
        str(impact_id), description, data.get('sourceUrl') or None, source='user'
    )
    return jsonify(evidence), 200


@main_bp.route('/evidence/<evidence_id>', methods=['GET'])
def get_evidence(evidence_id):
    return jsonify(_article_service().get_evidence(evidence_id)), 200


@main_bp.route('/analysis-history', methods=['GET'])
def get_analysis_history():
    """List the caller's analyses; always answers with a list, empty without a valid token."""
    if g.user_id is None:
        return jsonify({"analyses": []}), 200
    try:
        analyses = _article_service().list_history(g.user_id)
    except ImpactLensError as e:
        current_app.logger.error(f"Error fetching analysis history: {e}")
        analyses = []
    return jsonify({"analyses": analyses}), 200


@main_bp.route('/analysis-history/<entry_id>', methods=['DELETE'])
def delete_analysis_history(entry_id):
    _article_service().delete_history_entry(entry_id, g.user_id)
    return jsonify({"success": True}), 200
