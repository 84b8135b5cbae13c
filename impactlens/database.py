import atexit
import logging

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from .models.records import ARTICLES, EVIDENCE, HISTORY, IMPACTS

logger = logging.getLogger(__name__)


def init_db(app):
    """Connect to MongoDB and return the database handle, or None when the connection fails."""
    mongo_uri = app.config.get('MONGO_URI')
    if not mongo_uri:
        app.logger.error("MONGO_URI configuration is missing")
        return None

    try:
        client = MongoClient(
            mongo_uri,
            serverSelectionTimeoutMS=5000  # 5 second timeout
        )
        # Test the connection explicitly
        client.admin.command('ping')
    except ConnectionFailure as e:
        app.logger.error(f"Failed to connect to MongoDB: {e}")
        return None
    except PyMongoError as e:
        app.logger.error(f"Unexpected error connecting to MongoDB: {e}")
        return None

    atexit.register(close_client, client)
    app.logger.info("Successfully connected to MongoDB")
    return client.get_database(app.config.get('MONGO_DB_NAME', 'impactlens'))


def close_client(client):
    try:
        client.close()
        logger.info("Database connection closed")
    except PyMongoError as e:
        logger.error(f"Error closing MongoDB connection: {e}")


def ensure_indexes(db):
    """Create the indexes the queries rely on, if needed."""
    try:
        db[ARTICLES].create_index('analysis_id', unique=True, sparse=True)
        db[ARTICLES].create_index('userId')
        db[IMPACTS].create_index('article_id')
        db[IMPACTS].create_index('analysis_id')
        db[EVIDENCE].create_index('impact_id')
        db[EVIDENCE].create_index('analysis_id')
        db[HISTORY].create_index([('userId', ASCENDING), ('createdAt', DESCENDING)])
        db[HISTORY].create_index('analysis_id')
        db[HISTORY].create_index('articleId')
    except PyMongoError as e:
        logger.error(f"Failed to create indexes: {e}")
        raise
