import logging
from datetime import timedelta

from pymongo.errors import PyMongoError

from ..models.records import ARTICLES, EVIDENCE, HISTORY, IMPACTS, as_utc, utcnow
from ..utils.errors import StorageError

logger = logging.getLogger(__name__)


class OrphanSweeperTask:
    """
    Removes documents left behind by analyses that failed half way: impacts whose
    article is gone, evidence whose impact is gone, and history entries whose article
    is gone. Anything younger than the grace period is skipped because an analysis may
    still be writing it (evidence is stored before the impact that points to it).
    """

    def __init__(self, db_client, grace_minutes=30):
        self.db = db_client
        self.articles = self.db.get_collection(ARTICLES)
        self.impacts = self.db.get_collection(IMPACTS)
        self.evidence = self.db.get_collection(EVIDENCE)
        self.history = self.db.get_collection(HISTORY)
        self.grace = timedelta(minutes=grace_minutes)

        self.stats = {
            'impacts_removed': 0,
            'evidence_removed': 0,
            'history_removed': 0,
            'evidence_refs_repaired': 0,
        }

    def _is_stale(self, doc, field, cutoff):
        created = as_utc(doc.get(field))
        return created is None or created < cutoff

    def _ids(self, collection):
        return {str(doc['_id']) for doc in collection.find({}, {'_id': 1})}

    def sweep_impacts(self, cutoff):
        article_ids = self._ids(self.articles)
        orphaned = [
            doc['_id']
            for doc in self.impacts.find({}, {'article_id': 1, 'created_at': 1})
            if doc.get('article_id') not in article_ids and self._is_stale(doc, 'created_at', cutoff)
        ]
        if orphaned:
            self.stats['impacts_removed'] += self.impacts.delete_many({'_id': {'$in': orphaned}}).deleted_count

    def sweep_evidence(self, cutoff):
        impact_ids = set()
        referenced = set()
        for doc in self.impacts.find({}, {'supporting_evidence_ids': 1}):
            impact_ids.add(str(doc['_id']))
            referenced.update(doc.get('supporting_evidence_ids') or [])

        orphaned = [
            doc['_id']
            for doc in self.evidence.find({}, {'impact_id': 1, 'created_at': 1})
            if doc.get('impact_id') not in impact_ids
            and str(doc['_id']) not in referenced
            and self._is_stale(doc, 'created_at', cutoff)
        ]
        if orphaned:
            self.stats['evidence_removed'] += self.evidence.delete_many({'_id': {'$in': orphaned}}).deleted_count

    def repair_evidence_refs(self):
        evidence_ids = self._ids(self.evidence)
        for doc in self.impacts.find({}, {'supporting_evidence_ids': 1}):
            ids = doc.get('supporting_evidence_ids')
            if not ids:
                continue
            kept = [evidence_id for evidence_id in ids if evidence_id in evidence_ids]
            if len(kept) != len(ids):
                self.impacts.update_one(
                    {'_id': doc['_id']},
                    {'$set': {'supporting_evidence_ids': kept, 'updated_at': utcnow()}},
                )
                self.stats['evidence_refs_repaired'] += len(ids) - len(kept)

    def sweep_history(self, cutoff):
        article_ids = self._ids(self.articles)
        orphaned = [
            doc['_id']
            for doc in self.history.find({}, {'articleId': 1, 'createdAt': 1})
            if doc.get('articleId') not in article_ids and self._is_stale(doc, 'createdAt', cutoff)
        ]
        if orphaned:
            self.stats['history_removed'] += self.history.delete_many({'_id': {'$in': orphaned}}).deleted_count

    def run_sweeper(self):
        logger.info("Starting orphan sweep...")
        cutoff = utcnow() - self.grace
        try:
            self.sweep_impacts(cutoff)
            self.sweep_evidence(cutoff)
            self.repair_evidence_refs()
            self.sweep_history(cutoff)
        except PyMongoError as e:
            logger.error(f"MongoDB error during orphan sweep: {e}")
            raise StorageError(details=str(e)) from e
        logger.info(f"Orphan sweep complete. Stats: {self.stats}")
        return self.stats


def purge_all_collections(db_client):
    """Deletes every document, children before parents."""
    deleted = {}
    for name in (EVIDENCE, IMPACTS, ARTICLES, HISTORY):
        try:
            deleted[name] = db_client.get_collection(name).delete_many({}).deleted_count
        except PyMongoError as e:
            logger.error(f"MongoDB error purging {name}: {e}")
            raise StorageError(details=str(e)) from e
        logger.info(f"Deleted {deleted[name]} documents from {name}")
    return deleted
