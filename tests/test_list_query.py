"""Tests for the primary-first, ledger-fallback read path."""

import pytest

from conftest import FAST_RETRY, FAST_SETTINGS, make_record
from ledger_backup.errors import NotFoundError
from ledger_backup.models import BackupFilter, BackupStatus, BackupType
from ledger_backup.query import ListQueryService


@pytest.fixture
def query(primary, ledger) -> ListQueryService:
    return ListQueryService(primary, ledger, FAST_SETTINGS, FAST_RETRY)


async def _seed(primary, ledger) -> None:
    for record in (
        make_record("FULL_A", minutes=0),
        make_record("INC_A", BackupType.INCREMENTAL, parent="FULL_A", minutes=1),
        make_record("FULL_B", minutes=2),
    ):
        await primary.insert(record)
        await ledger.submit(record)


class TestList:
    async def test_primary_source(self, query, primary, ledger) -> None:
        await _seed(primary, ledger)
        result = await query.list()
        assert result.source == "primary"
        assert [r.backup_id for r in result.records] == ["FULL_B", "INC_A", "FULL_A"]

    async def test_primary_error_falls_back_to_ledger(self, query, primary, ledger) -> None:
        await _seed(primary, ledger)
        primary.available = False
        result = await query.list()
        assert result.source == "ledger"
        assert len(result.records) == 3

    async def test_primary_timeout_falls_back_to_ledger(self, query, primary, ledger) -> None:
        await _seed(primary, ledger)
        primary.latency = FAST_SETTINGS.primary_timeout * 5
        result = await query.list()
        assert result.source == "ledger"

    async def test_both_down_degrades(self, query, primary, ledger) -> None:
        primary.available = False
        ledger.available = False
        result = await query.list()
        assert result.source == "unavailable"
        assert result.records == []
        assert "ledger unavailable" in result.error

    async def test_filter_and_limit_apply_to_fallback(self, query, primary, ledger) -> None:
        await _seed(primary, ledger)
        primary.available = False
        result = await query.list(BackupFilter(type=BackupType.FULL), limit=1)
        assert [r.backup_id for r in result.records] == ["FULL_B"]

    async def test_records_normalized_from_dicts(self, primary, ledger) -> None:
        """Raw dict rows from a store are validated into BackupRecord."""

        class DictLedger:
            async def query_all(self, filter=None):
                return [make_record("FULL_A").model_dump(mode="json")]

        primary.available = False
        query = ListQueryService(primary, DictLedger(), FAST_SETTINGS, FAST_RETRY)
        result = await query.list(BackupFilter(status=BackupStatus.ACTIVE))
        assert result.records[0].status is BackupStatus.ACTIVE


class TestGet:
    async def test_get_from_primary(self, query, primary, ledger) -> None:
        await _seed(primary, ledger)
        record, source = await query.get_with_source("FULL_A")
        assert source == "primary"
        assert record.backup_id == "FULL_A"

    async def test_missing_in_primary_found_in_ledger(self, query, ledger) -> None:
        await ledger.submit(make_record("FULL_A"))
        record, source = await query.get_with_source("FULL_A")
        assert source == "ledger"

    async def test_not_found(self, query) -> None:
        with pytest.raises(NotFoundError):
            await query.get("FULL_X")

    async def test_both_down_not_found(self, query, primary, ledger) -> None:
        primary.available = False
        ledger.available = False
        with pytest.raises(NotFoundError, match="no store reachable"):
            await query.get("FULL_A")

    async def test_lookup_returns_none(self, query) -> None:
        assert await query.lookup("FULL_X") is None
