import threading
import time
from datetime import timedelta

import pytest
from bson.objectid import ObjectId

from impactlens.models.analysis import parse_analysis
from impactlens.models.records import utcnow
from impactlens.services.article_service import ArticleService
from impactlens.utils.errors import ConflictError, InvalidInputError, NotFoundError, StorageError


def _analysis(impact_count, evidence_per_impact):
    return parse_analysis({
        "article_title": "Round trip",
        "impacts": [
            {
                "impacted_entity": f"Entity {i}",
                "impact": f"Impact {i}",
                "score": 0.1 * i,
                "supporting_evidence": [
                    {"description": f"Evidence {i}.{j}"} for j in range(evidence_per_impact)
                ],
            }
            for i in range(impact_count)
        ],
    })


class TestStoreAndRetrieve:
    def test_round_trip_n_impacts_m_evidence(self, article_service):
        article_id = article_service.create_article("Round trip", "body", analysis_id="rt")
        impact_ids = article_service.store_analysis(article_id, _analysis(3, 2), analysis_id="rt")

        data = article_service.get_article_with_impacts(article_id, expand_evidence=True)

        assert data["article"]["id"] == article_id
        assert [impact["id"] for impact in data["impacts"]] == impact_ids
        assert [impact["impacted_entity"] for impact in data["impacts"]] == ["Entity 0", "Entity 1", "Entity 2"]
        for impact in data["impacts"]:
            assert len(impact["supporting_evidence_ids"]) == 2
            assert len(impact["supporting_evidence"]) == 2
            for evidence in impact["supporting_evidence"]:
                assert evidence["impact_id"] == impact["id"]

    def test_impacts_carry_only_ids_unless_expanded(self, article_service, stored_article):
        data = article_service.get_article_with_impacts(stored_article["article_id"])

        assert all("supporting_evidence" not in impact for impact in data["impacts"])
        assert all(impact["user_votes_up"] == 0 for impact in data["impacts"])

    def test_placeholder_urls_are_not_persisted(self, article_service, db, stored_article):
        urls = [doc["source_url"] for doc in db.evidence.find({})]

        assert "https://example.com/night" not in urls
        assert "https://city.gov/levy" in urls

    def test_missing_evidence_degrades_to_no_evidence(self, article_service, db, stored_article):
        impact = article_service.list_impacts(stored_article["article_id"])[0]
        db.evidence.delete_one({"description": "Night buses return."})

        evidence = article_service.get_evidence_for_impact(impact["id"])

        assert [e["description"] for e in evidence] == ["Service frequency doubles on six routes."]

    def test_missing_and_malformed_article_ids(self, article_service):
        with pytest.raises(NotFoundError):
            article_service.get_article_with_impacts("0123456789abcdef01234567")
        with pytest.raises(NotFoundError):
            article_service.get_article_with_impacts("not-an-id")

    def test_duplicate_analysis_attempt_conflicts(self, article_service):
        article_service.create_article("A", "body", analysis_id="same")

        with pytest.raises(ConflictError):
            article_service.create_article("B", "body", analysis_id="same")


class TestVoting:
    def test_repeated_votes_only_increment_that_direction(self, article_service, stored_article):
        impact_id = stored_article["impact_ids"][0]

        for _ in range(3):
            impact = article_service.vote(impact_id, "up")

        assert impact["user_votes_up"] == 3
        assert impact["user_votes_down"] == 0

    def test_up_and_down_votes_both_persist(self, article_service, stored_article):
        impact_id = stored_article["impact_ids"][1]

        article_service.vote(impact_id, "up")
        article_service.vote(impact_id, "down")

        impact = article_service.get_impact(impact_id)
        assert (impact["user_votes_up"], impact["user_votes_down"]) == (1, 1)

    def test_invalid_vote_type(self, article_service, stored_article):
        with pytest.raises(InvalidInputError):
            article_service.vote(stored_article["impact_ids"][0], "sideways")

    def test_vote_on_missing_impact(self, article_service):
        with pytest.raises(NotFoundError):
            article_service.vote("0123456789abcdef01234567", "up")

    def test_vote_scoped_to_article(self, article_service, stored_article):
        other_article = article_service.create_article("Other", "body", analysis_id="other")

        with pytest.raises(NotFoundError, match="not found in this article"):
            article_service.vote(stored_article["impact_ids"][0], "up", article_id=other_article)

        impact = article_service.vote(stored_article["impact_ids"][0], "down", article_id=stored_article["article_id"])
        assert impact["user_votes_down"] == 1


class TestManualAugmentation:
    def test_create_impact_on_existing_article(self, article_service, stored_article):
        impact = article_service.create_impact(stored_article["article_id"], "Cyclists", "New bike lanes", 0.3)

        assert impact["source"] == "user"
        assert impact["supporting_evidence_ids"] == []
        assert article_service.count_impacts(stored_article["article_id"]) == 3

    def test_create_impact_requires_article(self, article_service):
        with pytest.raises(NotFoundError):
            article_service.create_impact("0123456789abcdef01234567", "X", "Y", 0.1)

    def test_add_evidence_appends_id(self, article_service, stored_article):
        impact_id = stored_article["impact_ids"][1]

        evidence = article_service.add_evidence(impact_id, "Council minutes", "https://city.gov/minutes")

        impact = article_service.get_impact(impact_id)
        assert impact["supporting_evidence_ids"][-1] == evidence["id"]
        assert len(impact["supporting_evidence_ids"]) == 2
        assert evidence["source"] == "user"
        assert evidence["impact_id"] == impact_id

    def test_add_evidence_to_missing_impact(self, article_service, db):
        with pytest.raises(NotFoundError):
            article_service.add_evidence("0123456789abcdef01234567", "Orphan")

        assert db.evidence.count_documents({}) == 0


class TestDeletion:
    def test_delete_cascades(self, article_service, db, stored_article):
        article_id = stored_article["article_id"]
        article_service.create_impact(article_id, "Cyclists", "New bike lanes", 0.3)
        assert article_service.count_impacts(article_id) == 3

        article_service.delete_article(article_id, user_id="user-1")

        with pytest.raises(NotFoundError):
            article_service.get_article(article_id)
        assert db.impacts.count_documents({"article_id": article_id}) == 0
        assert db.evidence.count_documents({}) == 0
        assert db.analysis_history.count_documents({"articleId": article_id}) == 0

    def test_delete_requires_owner(self, article_service, stored_article):
        with pytest.raises(NotFoundError):
            article_service.delete_article(stored_article["article_id"], user_id="user-2")

        assert article_service.get_article(stored_article["article_id"])

    def test_purge_analysis_removes_everything_from_one_attempt(self, article_service, db, stored_article):
        counts = article_service.purge_analysis("attempt-stored")

        assert counts == {"evidence": 3, "impacts": 2, "analysis_history": 1, "articles": 1}
        assert db.articles.count_documents({}) == 0


class TestHistory:
    def test_history_is_newest_first_with_live_counts(self, article_service, db, stored_article):
        newer = article_service.create_article("Newer", "body", user_id="user-1", analysis_id="newer")
        db.analysis_history.insert_one({
            "userId": "user-1",
            "articleId": newer,
            "title": "Newer",
            "impactCount": 99,
            "createdAt": utcnow() + timedelta(minutes=5),
            "updatedAt": utcnow(),
        })
        article_service.create_impact(stored_article["article_id"], "Cyclists", "New bike lanes", 0.3)

        analyses = article_service.list_history("user-1")

        assert [a["articleId"] for a in analyses] == [newer, stored_article["article_id"]]
        assert analyses[0]["article"]["cnt_of_impacts"] == 0
        assert analyses[1]["article"]["cnt_of_impacts"] == 3
        assert analyses[1]["impactCount"] == 2

    def test_entries_with_missing_articles_are_skipped(self, article_service, db, stored_article):
        db.analysis_history.insert_one({"userId": "user-1", "articleId": "0123456789abcdef01234567",
                                        "title": "Gone", "impactCount": 1, "createdAt": utcnow()})
        db.analysis_history.insert_one({"userId": "user-1", "articleId": "garbage",
                                        "title": "Broken", "impactCount": 1, "createdAt": utcnow()})

        analyses = article_service.list_history("user-1")

        assert [a["articleId"] for a in analyses] == [stored_article["article_id"]]

    def test_history_is_scoped_to_user(self, article_service, stored_article):
        assert article_service.list_history("user-2") == []

    def test_delete_history_entry(self, article_service, stored_article):
        entry = article_service.list_history("user-1")[0]

        with pytest.raises(NotFoundError):
            article_service.delete_history_entry(entry["id"], "user-2")
        article_service.delete_history_entry(entry["id"], "user-1")

        assert article_service.list_history("user-1") == []


class _LockedCollection:
    """Serializes calls into one mongomock collection so writer threads can share it."""

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def locked(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)
        return locked


class _LockedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.RLock()

    def get_collection(self, name):
        return _LockedCollection(self._db.get_collection(name), self._lock)


class TestConcurrentWriter:
    @pytest.fixture
    def writer(self, db):
        return ArticleService(_LockedDatabase(db), max_workers=4)

    def test_impacts_written_in_parallel_keep_their_evidence(self, writer, monkeypatch):
        original = writer.create_evidence
        written_early = []

        def create_evidence(impact_id, *args, **kwargs):
            # The impact document must not exist yet while its evidence is written
            if writer.impacts_collection.count_documents({"_id": ObjectId(impact_id)}):
                written_early.append(impact_id)
            time.sleep(0.005)
            return original(impact_id, *args, **kwargs)

        monkeypatch.setattr(writer, "create_evidence", create_evidence)
        article_id = writer.create_article("Parallel", "body", analysis_id="parallel")

        impact_ids = writer.store_analysis(article_id, _analysis(8, 3), analysis_id="parallel")

        assert written_early == []
        assert [impact["id"] for impact in writer.list_impacts(article_id)] == impact_ids
        for impact in writer.list_impacts(article_id):
            evidence = [writer.get_evidence(evidence_id) for evidence_id in impact["supporting_evidence_ids"]]
            assert len(evidence) == 3
            assert all(e["impact_id"] == impact["id"] for e in evidence)
            assert all(e["description"].startswith(f"Evidence {impact['impacted_entity'][-1]}.") for e in evidence)

    def test_failing_branch_surfaces_after_the_others_finish(self, writer, db, monkeypatch):
        original = writer.create_evidence

        def create_evidence(impact_id, description, *args, **kwargs):
            if description.startswith("Evidence 2."):
                raise StorageError(details="evidence write failed")
            time.sleep(0.005)
            return original(impact_id, description, *args, **kwargs)

        monkeypatch.setattr(writer, "create_evidence", create_evidence)
        article_id = writer.create_article("Parallel", "body", analysis_id="parallel-fail")

        with pytest.raises(StorageError):
            writer.store_analysis(article_id, _analysis(6, 2), analysis_id="parallel-fail")

        stored = {doc["impacted_entity"] for doc in db.impacts.find({"article_id": article_id})}
        assert stored == {"Entity 0", "Entity 1", "Entity 3", "Entity 4", "Entity 5"}
        assert db.evidence.count_documents({"analysis_id": "parallel-fail"}) == 10
