import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from bson.objectid import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..models.analysis import DEFAULT_CONFIDENCE, clean_source_url
from ..models.records import (
    ARTICLES, EVIDENCE, HISTORY, IMPACTS, VOTE_FIELDS, serialize, to_object_id, utcnow,
)
from ..utils.errors import ConflictError, InvalidInputError, NotFoundError, StorageError

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(action):
    """Log MongoDB failures with context and re-raise them as StorageError."""
    try:
        yield
    except PyMongoError as e:
        logger.error(f"MongoDB error {action}: {e}")
        raise StorageError(details=str(e)) from e


class ArticleService:
    def __init__(self, db_client, max_workers=4):
        self.db = db_client
        self.max_workers = max(1, max_workers)
        self.articles_collection = self.db.get_collection(ARTICLES)
        self.impacts_collection = self.db.get_collection(IMPACTS)
        self.evidence_collection = self.db.get_collection(EVIDENCE)
        self.history_collection = self.db.get_collection(HISTORY)

    # Articles

    def create_article(self, title, content, url="", impacting_entity="", user_id=None, analysis_id=None):
        now = utcnow()
        doc = {
            "title": title,
            "content": content,
            "url": url or "",
            "impacting_entity": impacting_entity or "",
            "userId": user_id,
            "created_at": now,
            "updated_at": now,
        }
        if analysis_id:
            doc["analysis_id"] = analysis_id
        try:
            result = self.articles_collection.insert_one(doc)
        except DuplicateKeyError as e:
            logger.warning(f"Analysis attempt {analysis_id} is already being stored")
            raise ConflictError("Analysis attempt already in progress", details=str(e)) from e
        except PyMongoError as e:
            logger.error(f"MongoDB error creating article: {e}")
            raise StorageError(details=str(e)) from e
        logger.info(f"Created article {result.inserted_id} for analysis {analysis_id}")
        return str(result.inserted_id)

    def _find_article(self, article_id):
        oid = to_object_id(article_id, "Article")
        with storage_errors(f"fetching article {article_id}"):
            return self.articles_collection.find_one({"_id": oid})

    def get_article(self, article_id):
        article = self._find_article(article_id)
        if not article:
            logger.warning(f"Article with ID {article_id} not found.")
            raise NotFoundError("Article not found")
        return serialize(article)

    def find_article_by_analysis(self, analysis_id):
        """Returns the raw article document written under an analysis attempt, if any."""
        with storage_errors(f"fetching article for analysis {analysis_id}"):
            return self.articles_collection.find_one({"analysis_id": analysis_id})

    def get_article_with_impacts(self, article_id, expand_evidence=False):
        """
        Retrieves an article and its impacts. Impacts carry only their evidence ids
        unless ``expand_evidence`` is set, in which case each id is resolved on its own
        and unreachable evidence is left out.
        """
        article = self.get_article(article_id)
        impacts = self.list_impacts(article["id"])
        if expand_evidence:
            for impact in impacts:
                impact["supporting_evidence"] = self.resolve_evidence(impact.get("supporting_evidence_ids") or [])
        logger.info(f"Retrieved article {article_id} with {len(impacts)} impacts")
        return {"article": article, "impacts": impacts}

    def delete_article(self, article_id, user_id=None):
        """Deletes an article owned by ``user_id`` together with its impacts, evidence and history."""
        article = self._find_article(article_id)
        if not article:
            raise NotFoundError("Article not found")
        owner = article.get("userId")
        if owner and owner != user_id:
            logger.warning(f"User {user_id} tried to delete article {article_id} owned by {owner}")
            raise NotFoundError("Article not found")

        article_id = str(article["_id"])
        with storage_errors(f"deleting article {article_id}"):
            impact_ids = [
                str(doc["_id"])
                for doc in self.impacts_collection.find({"article_id": article_id}, {"_id": 1})
            ]
            evidence_result = self.evidence_collection.delete_many({"impact_id": {"$in": impact_ids}})
            impacts_result = self.impacts_collection.delete_many({"article_id": article_id})
            self.history_collection.delete_many({"articleId": article_id})
            self.articles_collection.delete_one({"_id": article["_id"]})
        logger.info(
            f"Deleted article {article_id} with {impacts_result.deleted_count} impacts "
            f"and {evidence_result.deleted_count} evidence items"
        )

    def mark_analysis_complete(self, article_id):
        with storage_errors(f"marking analysis of article {article_id} complete"):
            self.articles_collection.update_one(
                {"_id": to_object_id(article_id, "Article")},
                {"$set": {"analysis_completed_at": utcnow()}},
            )

    def delete_article_only(self, article_id):
        with storage_errors(f"deleting article {article_id}"):
            self.articles_collection.delete_one({"_id": to_object_id(article_id, "Article")})

    def purge_analysis(self, analysis_id):
        """Removes every document written under one analysis attempt."""
        counts = {}
        with storage_errors(f"purging analysis {analysis_id}"):
            for name, collection in (
                (EVIDENCE, self.evidence_collection),
                (IMPACTS, self.impacts_collection),
                (HISTORY, self.history_collection),
                (ARTICLES, self.articles_collection),
            ):
                counts[name] = collection.delete_many({"analysis_id": analysis_id}).deleted_count
        logger.info(f"Purged analysis {analysis_id}: {counts}")
        return counts

    # Impacts

    def list_impacts(self, article_id):
        with storage_errors(f"fetching impacts for article {article_id}"):
            cursor = self.impacts_collection.find({"article_id": article_id}).sort("_id", ASCENDING)
            return [serialize(doc) for doc in cursor]

    def count_impacts(self, article_id):
        with storage_errors(f"counting impacts for article {article_id}"):
            return self.impacts_collection.count_documents({"article_id": article_id})

    def _find_impact(self, impact_id):
        oid = to_object_id(impact_id, "Impact")
        with storage_errors(f"fetching impact {impact_id}"):
            return self.impacts_collection.find_one({"_id": oid})

    def get_impact(self, impact_id):
        impact = self._find_impact(impact_id)
        if not impact:
            raise NotFoundError("Impact not found")
        return serialize(impact)

    def _impact_document(self, article_id, impacted_entity, impact, score, confidence, source,
                         evidence_ids=None, analysis_id=None, impact_oid=None):
        now = utcnow()
        doc = {
            "article_id": article_id,
            "impacted_entity": impacted_entity,
            "impact": impact,
            "score": score,
            "confidence": confidence,
            "source": source,
            "user_votes_up": 0,
            "user_votes_down": 0,
            "supporting_evidence_ids": list(evidence_ids or []),
            "created_at": now,
            "updated_at": now,
        }
        if analysis_id:
            doc["analysis_id"] = analysis_id
        if impact_oid is not None:
            doc["_id"] = impact_oid
        return doc

    def create_impact(self, article_id, impacted_entity, impact, score, confidence=None, source="user"):
        """Adds a single impact to an existing article."""
        if not self._find_article(article_id):
            logger.error(f"Cannot add impact, article not found: {article_id}")
            raise NotFoundError(f"Article with ID {article_id} not found")

        if confidence is None:
            confidence = DEFAULT_CONFIDENCE
        doc = self._impact_document(
            article_id, impacted_entity, impact, score, confidence, source, impact_oid=ObjectId()
        )
        with storage_errors(f"creating impact for article {article_id}"):
            self.impacts_collection.insert_one(doc)
        logger.info(f"Created impact {doc['_id']} on article {article_id}")
        return serialize(doc)

    def vote(self, impact_id, vote_type, article_id=None):
        """Atomically increments one vote counter and returns the updated impact."""
        field = VOTE_FIELDS.get(vote_type)
        if field is None:
            raise InvalidInputError("Invalid vote type. Must be 'up' or 'down'")

        query = {"_id": to_object_id(impact_id, "Impact")}
        if article_id is not None:
            if not self._find_article(article_id):
                raise NotFoundError("Article not found")
            query["article_id"] = article_id

        with storage_errors(f"voting on impact {impact_id}"):
            updated = self.impacts_collection.find_one_and_update(
                query,
                {"$inc": {field: 1}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if updated is None:
            if article_id is not None:
                raise NotFoundError("Impact not found in this article")
            raise NotFoundError("Impact not found")
        logger.info(f"Recorded '{vote_type}' vote on impact {impact_id}")
        return serialize(updated)

    # Evidence

    def create_evidence(self, impact_id, description, source_url="", source="system", analysis_id=None):
        now = utcnow()
        doc = {
            "impact_id": impact_id,
            "description": description,
            "source_url": clean_source_url(source_url),
            "source": source or "system",
            "created_at": now,
            "updated_at": now,
        }
        if analysis_id:
            doc["analysis_id"] = analysis_id
        with storage_errors(f"creating evidence for impact {impact_id}"):
            result = self.evidence_collection.insert_one(doc)
        return str(result.inserted_id)

    def add_evidence(self, impact_id, description, source_url=None, source="user"):
        """Stores user evidence and appends its id to the impact's evidence list."""
        if not self._find_impact(impact_id):
            raise NotFoundError("Impact not found")

        evidence_id = self.create_evidence(impact_id, description, source_url, source)
        with storage_errors(f"linking evidence {evidence_id} to impact {impact_id}"):
            result = self.impacts_collection.update_one(
                {"_id": to_object_id(impact_id, "Impact")},
                {"$push": {"supporting_evidence_ids": evidence_id}, "$set": {"updated_at": utcnow()}},
            )
            if result.matched_count == 0:
                # Impact vanished between the check and the append
                self.evidence_collection.delete_one({"_id": ObjectId(evidence_id)})
                raise NotFoundError("Impact not found")
        logger.info(f"Added evidence {evidence_id} to impact {impact_id}")
        return self.get_evidence(evidence_id)

    def get_evidence(self, evidence_id):
        oid = to_object_id(evidence_id, "Evidence")
        with storage_errors(f"fetching evidence {evidence_id}"):
            evidence = self.evidence_collection.find_one({"_id": oid})
        if not evidence:
            raise NotFoundError("Evidence not found")
        return serialize(evidence)

    def resolve_evidence(self, evidence_ids):
        evidence = []
        for evidence_id in evidence_ids:
            try:
                evidence.append(self.get_evidence(evidence_id))
            except (NotFoundError, StorageError) as e:
                logger.warning(f"Skipping evidence {evidence_id}: {e}")
        return evidence

    def get_evidence_for_impact(self, impact_id):
        impact = self.get_impact(impact_id)
        return self.resolve_evidence(impact.get("supporting_evidence_ids") or [])

    # Analysis persistence

    def store_analysis(self, article_id, analysis, analysis_id=None):
        """
        Writes every impact of ``analysis`` under ``article_id``. Within one impact the
        evidence is written first; separate impacts are written concurrently. Impact ids
        are allocated up front so list order follows the analysis order.
        """
        impact_oids = [ObjectId() for _ in analysis.impacts]
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._store_impact, article_id, impact, analysis_id, oid, index)
                for index, (impact, oid) in enumerate(zip(analysis.impacts, impact_oids))
            ]
            impact_ids = [future.result() for future in futures]
        logger.info(f"Stored {len(impact_ids)} impacts for article {article_id}")
        return impact_ids

    def _store_impact(self, article_id, impact, analysis_id, impact_oid, index):
        impact_id = str(impact_oid)
        evidence_ids = [
            self.create_evidence(
                impact_id,
                evidence.description,
                evidence.source_url,
                evidence.source,
                analysis_id=analysis_id,
            )
            for evidence in impact.supporting_evidence
        ]
        doc = self._impact_document(
            article_id,
            impact.impacted_entity,
            impact.impact,
            impact.score,
            impact.confidence,
            impact.source,
            evidence_ids=evidence_ids,
            analysis_id=analysis_id,
            impact_oid=impact_oid,
        )
        with storage_errors(f"storing impact {index + 1} for article {article_id}"):
            self.impacts_collection.insert_one(doc)
        logger.debug(f"Impact {index + 1} stored with ID {impact_id} and {len(evidence_ids)} evidence items")
        return impact_id

    # History

    def create_history_entry(self, user_id, article_id, title, impact_count, analysis_id=None):
        now = utcnow()
        doc = {
            "userId": user_id,
            "articleId": article_id,
            "analysis_id": analysis_id,
            "title": title,
            "impactCount": impact_count,
            "createdAt": now,
            "updatedAt": now,
        }
        with storage_errors(f"storing analysis history for article {article_id}"):
            result = self.history_collection.insert_one(doc)
        return str(result.inserted_id)

    def find_history_by_analysis(self, analysis_id):
        with storage_errors(f"fetching history for analysis {analysis_id}"):
            return serialize(self.history_collection.find_one({"analysis_id": analysis_id}))

    def list_history(self, user_id):
        """
        Lists a user's analyses, newest first. Impact counts are recomputed on every call
        and entries whose article no longer exists are skipped.
        """
        with storage_errors(f"fetching analysis history for user {user_id}"):
            entries = list(self.history_collection.find({"userId": user_id}).sort("createdAt", DESCENDING))

        analyses = []
        for entry in entries:
            entry = serialize(entry)
            try:
                article = self._find_article(entry.get("articleId"))
            except NotFoundError:
                article = None
            if not article:
                logger.warning(f"Article {entry.get('articleId')} not found for analysis {entry['id']}")
                continue

            article = serialize(article)
            analyses.append({
                **entry,
                "article": {
                    "id": article["id"],
                    "title": article.get("title") or "",
                    "content": article.get("content") or "",
                    "url": article.get("url") or "",
                    "impacting_entity": article.get("impacting_entity") or "",
                    "created_at": article.get("created_at"),
                    "updated_at": article.get("updated_at"),
                    "cnt_of_impacts": self.count_impacts(article["id"]),
                },
            })
        return analyses

    def delete_history_entry(self, entry_id, user_id):
        oid = to_object_id(entry_id, "Analysis history entry")
        with storage_errors(f"deleting analysis history entry {entry_id}"):
            result = self.history_collection.delete_one({"_id": oid, "userId": user_id})
        if result.deleted_count == 0:
            raise NotFoundError("Analysis history entry not found")
        logger.info(f"Deleted analysis history entry {entry_id}")
