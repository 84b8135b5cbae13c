import logging

from pymongo.errors import PyMongoError

from ..models.analysis import clean_source_url
from ..models.records import EVIDENCE, IMPACTS, utcnow
from ..utils.errors import StorageError

logger = logging.getLogger(__name__)

# Older impact documents embed their evidence under one of these keys
LEGACY_EVIDENCE_FIELDS = ('supporting_evidence', 'evidence')


class EvidenceIdsMigrationTask:
    """
    Moves evidence embedded in impact documents into the evidence collection and
    replaces it with ``supporting_evidence_ids``. Impacts that already carry the id
    list are skipped, so the task can be run any number of times.
    """

    def __init__(self, db_client):
        self.db = db_client
        self.impacts = self.db.get_collection(IMPACTS)
        self.evidence = self.db.get_collection(EVIDENCE)
        self.stats = {
            'scanned': 0,
            'migrated': 0,
            'skipped': 0,
            'evidence_created': 0,
        }

    def _embedded_evidence(self, impact):
        for field in LEGACY_EVIDENCE_FIELDS:
            items = impact.get(field)
            if items:
                return [item for item in items if isinstance(item, dict)]
        return []

    def migrate_impact(self, impact):
        impact_id = str(impact['_id'])
        now = utcnow()

        # Leftovers from an interrupted run of this task
        self.evidence.delete_many({'impact_id': impact_id, 'migrated_from_embedded': True})

        evidence_ids = []
        for item in self._embedded_evidence(impact):
            result = self.evidence.insert_one({
                'impact_id': impact_id,
                'description': item.get('description', ''),
                'source_url': clean_source_url(item.get('source_url')),
                'source': item.get('source') or 'system',
                'migrated_from_embedded': True,
                'created_at': item.get('created_at') or now,
                'updated_at': now,
            })
            evidence_ids.append(str(result.inserted_id))

        updates = {'supporting_evidence_ids': evidence_ids, 'updated_at': now}
        removals = {field: '' for field in LEGACY_EVIDENCE_FIELDS if field in impact}

        feedback = impact.get('user_feedback')
        if not isinstance(feedback, dict):
            feedback = {}
        updates['user_votes_up'] = impact.get('user_votes_up', int(feedback.get('thumbs_up') or 0))
        updates['user_votes_down'] = impact.get('user_votes_down', int(feedback.get('thumbs_down') or 0))
        if 'user_feedback' in impact:
            removals['user_feedback'] = ''

        update = {'$set': updates}
        if removals:
            update['$unset'] = removals
        self.impacts.update_one({'_id': impact['_id']}, update)

        self.stats['evidence_created'] += len(evidence_ids)
        logger.info(f"Updated impact {impact_id} with {len(evidence_ids)} evidence IDs")

    def run_migration(self):
        logger.info("Starting migration to evidence IDs...")
        try:
            for impact in self.impacts.find({}):
                self.stats['scanned'] += 1
                if 'supporting_evidence_ids' in impact:
                    self.stats['skipped'] += 1
                    continue
                self.migrate_impact(impact)
                self.stats['migrated'] += 1
        except PyMongoError as e:
            logger.error(f"MongoDB error during evidence ID migration: {e}")
            raise StorageError(details=str(e)) from e
        logger.info(f"Migration to evidence IDs completed. Stats: {self.stats}")
        return self.stats

    def verify(self):
        """Counts impacts on each schema generation."""
        total = with_ids = with_embedded = 0
        try:
            for impact in self.impacts.find({}):
                total += 1
                if 'supporting_evidence_ids' in impact:
                    with_ids += 1
                if any(field in impact for field in LEGACY_EVIDENCE_FIELDS):
                    with_embedded += 1
        except PyMongoError as e:
            logger.error(f"MongoDB error verifying migration: {e}")
            raise StorageError(details=str(e)) from e

        results = {
            'total_impacts': total,
            'with_evidence_ids': with_ids,
            'with_embedded_evidence': with_embedded,
            'percentage_migrated': round(with_ids / total * 100, 2) if total else 100.0,
        }
        logger.info(f"Migration verification results: {results}")
        return results
