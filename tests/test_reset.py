"""Tests for reset functionality."""

from crmlinker.database import Business, LinkRecord, LinkSource
from crmlinker.repositories import LinkRepository
from crmlinker.reset import reset_state
from crmlinker.work_queue import WorkQueue


class TestReset:
    """Test clearing links and jobs."""

    def test_reset_removes_links_and_jobs(self, database, businesses):
        """Links, their sources and all jobs are removed; businesses stay."""
        links = LinkRepository(database)
        links.insert(LinkRecord(
            dedup_website="acme.com",
            dedup_address="",
            match_type="direct_id",
            business_id=1,
            sources=[LinkSource(source_id="r1"), LinkSource(source_id="r2")],
        ))
        WorkQueue(database).enqueue(["r1", "r2", "r3"])

        assert reset_state(database) == (1, 3)

        assert links.count() == 0
        assert not WorkQueue(database).has_unfinished()
        with database.session() as session:
            assert session.query(LinkSource).count() == 0
            assert session.query(Business).count() == 4

    def test_reset_empty_database(self, database):
        """Nothing to remove is not an error."""
        assert reset_state(database) == (0, 0)
