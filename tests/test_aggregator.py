"""
Tests for classification, policy filtering and per-batch aggregation.
"""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from abuse_monitor import database
from abuse_monitor.aggregator import BatchResult, ClassifierAggregator
from abuse_monitor.blocklist_service import BlockListService, BlockListUnavailable, BlockStatus
from abuse_monitor.log_processor import parse_log_body, parse_log_line

from conftest import make_line


@pytest.fixture
def aggregator(temp_db, loaded_block_list, geo_catalog, db_lock):
    return ClassifierAggregator(loaded_block_list, geo_catalog, db_path=temp_db, db_write_lock=db_lock)


def entries_for(*pairs):
    """pairs: (ip, 'HH:MM:SS') pairs on 10/Jan/2024 +0000."""
    return [parse_log_line(make_line(ip, f"10/Jan/2024:{clock} +0000")) for ip, clock in pairs]


class TestClassifyIp:
    def test_block_list_country_wins(self, aggregator):
        info = aggregator.classify_ip("203.0.113.7")
        assert info.status == BlockStatus.BLOCKED
        assert info.country == "US"
        assert info.asn == "AS64500"

    def test_sentinel_country_falls_back_to_geo(self, aggregator):
        info = aggregator.classify_ip("192.0.2.44")
        assert info.status == BlockStatus.BLOCKED
        assert info.country == "FR"
        assert info.asn == "AS64501"

    def test_unknown_everything(self, aggregator):
        info = aggregator.classify_ip("10.0.0.1")
        assert info.status == BlockStatus.NOT_FOUND
        assert info.country == "xx"
        assert info.asn == "Unknown"

    def test_geoip_reader_used_last(self, aggregator, mock_geoip_reader):
        aggregator.geo_catalog.geoip_reader = mock_geoip_reader
        assert aggregator.classify_ip("10.0.0.1").country == "NL"


class TestPolicyFilter:
    def test_only_blocked_and_not_excluded(self, aggregator):
        retained, classified = aggregator.filter_entries(entries_for(
            ("203.0.113.7", "01:00:00"),   # blocked, US
            ("198.51.100.9", "01:00:01"),  # not blocked
            ("100.64.0.5", "01:00:02"),    # blocked, WW
            ("10.0.0.1", "01:00:03"),      # not found
        ))
        assert [e.source_ip for e in retained] == ["203.0.113.7"]
        assert len(classified) == 4

    def test_each_ip_classified_once(self, aggregator):
        entries = entries_for(("203.0.113.7", "01:00:00"), ("203.0.113.7", "01:00:01"), ("203.0.113.7", "01:00:02"))
        with patch.object(aggregator, "classify_ip", wraps=aggregator.classify_ip) as classify:
            aggregator.filter_entries(entries)
        assert classify.call_count == 1

    def test_configurable_interesting_status(self, temp_db, loaded_block_list, geo_catalog):
        agg = ClassifierAggregator(loaded_block_list, geo_catalog, db_path=temp_db,
                                   interesting_status="not_blocked")
        retained, _ = agg.filter_entries(entries_for(("203.0.113.7", "01:00:00"), ("198.51.100.9", "01:00:01")))
        assert [e.source_ip for e in retained] == ["198.51.100.9"]

    def test_excluded_countries_case_insensitive(self, temp_db, loaded_block_list, geo_catalog):
        agg = ClassifierAggregator(loaded_block_list, geo_catalog, db_path=temp_db, excluded_countries={"US"})
        retained, _ = agg.filter_entries(entries_for(("203.0.113.7", "01:00:00"), ("192.0.2.44", "01:00:01")))
        assert [e.source_ip for e in retained] == ["192.0.2.44"]


class TestProcess:
    @pytest.mark.asyncio
    async def test_duplicate_ip_counts_twice(self, aggregator, temp_db):
        result = await aggregator.process(
            entries_for(("203.0.113.7", "01:00:00"), ("203.0.113.7", "01:00:05")), node_address="198.51.100.20")

        assert result == BatchResult(entries_seen=2, entries_retained=2, unique_ips=1)
        row = database.blocking_get_ip_stat(temp_db, "203.0.113.7")
        assert row["request_count"] == 2
        assert row["last_seen"] == entries_for(("203.0.113.7", "01:00:05"))[0].timestamp

    @pytest.mark.asyncio
    async def test_batch_equals_sequential_batches(self, aggregator, temp_db, tmp_path, loaded_block_list,
                                                   geo_catalog):
        lines = entries_for(("203.0.113.7", "01:00:00"), ("203.0.113.7", "01:00:05"))
        await aggregator.process(lines)

        other_db = str(tmp_path / "sequential.db")
        database.init_db(other_db)
        sequential = ClassifierAggregator(loaded_block_list, geo_catalog, db_path=other_db)
        await sequential.process(lines[:1])
        await sequential.process(lines[1:])

        batched = database.blocking_get_ip_stat(temp_db, "203.0.113.7")
        stepped = database.blocking_get_ip_stat(other_db, "203.0.113.7")
        for key in ("request_count", "first_seen", "last_seen", "country_code", "asn"):
            assert batched[key] == stepped[key]

    @pytest.mark.asyncio
    async def test_rollups_written(self, aggregator, temp_db, sample_log_body):
        entries, _ = parse_log_body(sample_log_body)
        result = await aggregator.process(entries, node_address="198.51.100.20")

        assert result.entries_retained == 3
        assert result.unique_ips == 2
        countries = {r["country_code"]: r["total_requests"] for r in database.blocking_get_country_stats(temp_db)}
        assert countries == {"US": 2, "FR": 1}
        asns = {r["asn"]: r["total_ips"] for r in database.blocking_get_asn_stats(temp_db)}
        assert asns == {"AS64500": 1, "AS64501": 1}

    @pytest.mark.asyncio
    async def test_detail_rows_stored(self, aggregator, temp_db, sample_log_body):
        entries, _ = parse_log_body(sample_log_body)
        await aggregator.process(entries, node_address="198.51.100.20")
        rows = database.blocking_get_recent_requests(temp_db, "192.0.2.44")
        assert len(rows) == 1
        assert rows[0]["request_method"] == "POST"
        assert rows[0]["response_time_ms"] == 123

    @pytest.mark.asyncio
    async def test_nothing_interesting_skips_store(self, aggregator):
        with patch("abuse_monitor.aggregator.blocking_apply_batch") as apply_batch:
            result = await aggregator.process(entries_for(("198.51.100.9", "01:00:00")))
        apply_batch.assert_not_called()
        assert result == BatchResult(entries_seen=1)

    @pytest.mark.asyncio
    async def test_empty_batch(self, aggregator):
        assert await aggregator.process([]) == BatchResult()

    @pytest.mark.asyncio
    async def test_refreshes_stale_block_list(self, aggregator):
        aggregator.block_list.ensure_fresh = AsyncMock()
        await aggregator.process(entries_for(("203.0.113.7", "01:00:00")))
        aggregator.block_list.ensure_fresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, aggregator):
        with patch("abuse_monitor.aggregator.blocking_apply_batch",
                   side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                await aggregator.process(entries_for(("203.0.113.7", "01:00:00")))
        assert not aggregator.db_write_lock.locked()

    @pytest.mark.asyncio
    async def test_unloaded_block_list_raises(self, temp_db, geo_catalog, fake_session, make_response):
        fake_session.routes["http://blocklist.test/all"] = make_response(status=404)
        block_list = BlockListService(fake_session, url="http://blocklist.test/all")
        aggregator = ClassifierAggregator(block_list, geo_catalog, db_path=temp_db)

        with patch("abuse_monitor.aggregator.blocking_apply_batch") as apply_batch:
            with pytest.raises(BlockListUnavailable):
                await aggregator.process(entries_for(("203.0.113.7", "01:00:00")))
        apply_batch.assert_not_called()
        assert database.blocking_get_ip_stat(temp_db, "203.0.113.7") is None



class TestRetention:
    @pytest.mark.asyncio
    async def test_prune_uses_retention_window(self, aggregator, temp_db):
        entries = entries_for(("203.0.113.7", "01:00:00"), ("203.0.113.7", "01:10:00"))
        await aggregator.process(entries)

        deleted = await aggregator.prune_detail_rows(now=entries[1].timestamp + 60)
        assert deleted == 1
        assert database.blocking_get_ip_stat(temp_db, "203.0.113.7")["request_count"] == 2
