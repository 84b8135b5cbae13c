from datetime import datetime, timezone

from bson.errors import InvalidId
from bson.objectid import ObjectId

from ..utils.errors import NotFoundError

ARTICLES = 'articles'
IMPACTS = 'impacts'
EVIDENCE = 'evidence'
HISTORY = 'analysis_history'

VOTE_FIELDS = {
    'up': 'user_votes_up',
    'down': 'user_votes_down',
}


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """MongoDB hands back naive UTC datetimes unless the client is tz-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value, kind='Document'):
    """Parse a path id, treating malformed ids the same as missing documents."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{kind} not found")


def _plain(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize(doc):
    """Convert a MongoDB document into a JSON-ready dict with a string ``id``."""
    if doc is None:
        return None
    data = {k: _plain(v) for k, v in doc.items() if k != '_id'}
    data['id'] = str(doc['_id'])
    return data
