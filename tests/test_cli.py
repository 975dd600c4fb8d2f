"""Tests for the ledger-backup CLI.

Commands run through ``main()`` against the in-memory service, so each
test exercises argument parsing, ``asyncio.run`` wrapping, and exit codes.
"""

import inspect
from unittest.mock import patch

import pytest

from ledger_backup import cli
from ledger_backup.backup.payload import compute_checksum
from ledger_backup.cli import build_parser, main
from ledger_backup.models import BackupStatus, BackupType


@pytest.fixture
def cli_service(service, monkeypatch):
    monkeypatch.setattr(cli, "_open_service", lambda args: service)
    return service


def _only_id(primary) -> str:
    (backup_id,) = primary.records
    return backup_id


# ------------------------------------------------------------------
# Parser
# ------------------------------------------------------------------


class TestParser:
    def test_prog(self) -> None:
        assert build_parser().prog == "ledger-backup"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_global_options(self) -> None:
        args = build_parser().parse_args(["--config", "b.toml", "--profile", "local", "-v", "stats"])
        assert args.config == "b.toml"
        assert args.profile == "local"
        assert args.verbose
        assert args.func is cli.cmd_stats

    def test_dispatches_to_command(self) -> None:
        with patch("ledger_backup.cli.cmd_stats", return_value=0) as mock_stats:
            parser = build_parser()
            args = parser.parse_args(["stats"])
        assert args.func is mock_stats

    def test_restore_requires_backup_id(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["restore"])
        assert exc_info.value.code == 2

    @pytest.mark.parametrize(
        "name",
        [name for name in dir(cli) if name.startswith("cmd_")],
    )
    def test_cmd_wraps_asyncio_run(self, name) -> None:
        """Every cmd_* wraps its _async_* implementation via asyncio.run()."""
        source = inspect.getsource(getattr(cli, name))
        assert "asyncio.run" in source
        assert inspect.iscoroutinefunction(getattr(cli, "_async_" + name[len("cmd_"):]))


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


class TestCommands:
    def test_full(self, cli_service, primary) -> None:
        assert main(["full", "--by", "admin-1", "--method", "CRON"]) == 0
        record = primary.records[_only_id(primary)]
        assert record.status is BackupStatus.ACTIVE
        assert record.triggered_by == "admin-1"

    def test_full_mirror_failure_exits_1(self, cli_service, ledger, primary) -> None:
        ledger.available = False
        assert main(["full"]) == 1
        assert primary.records[_only_id(primary)].status is BackupStatus.FAILED

    def test_incremental(self, cli_service, primary, data) -> None:
        main(["full"])
        parent = _only_id(primary)
        data.collections["orders"].pop()
        assert main(["incremental", parent]) == 0
        types = sorted(r.type.value for r in primary.records.values())
        assert types == [BackupType.FULL.value, BackupType.INCREMENTAL.value]

    def test_incremental_primary_down_exits_1(self, cli_service, primary, capsys) -> None:
        main(["full"])
        parent = _only_id(primary)
        primary.available = False
        assert main(["incremental", parent]) == 1
        assert "PRIMARY_UNAVAILABLE" in capsys.readouterr().out

    def test_list_from_ledger(self, cli_service, primary, capsys) -> None:
        main(["full"])
        primary.available = False
        assert main(["list", "--type", "FULL"]) == 0
        assert "ledger" in capsys.readouterr().out

    def test_list_unavailable(self, cli_service, primary, ledger) -> None:
        primary.available = False
        ledger.available = False
        assert main(["list"]) == 1

    def test_show_missing(self, cli_service, capsys) -> None:
        assert main(["show", "FULL_MISSING"]) == 1
        assert "NOT_FOUND" in capsys.readouterr().out

    def test_verify(self, cli_service, primary, ledger) -> None:
        main(["full"])
        assert main(["verify", _only_id(primary)]) == 0

        ledger.drop_submissions = True
        main(["full"])
        assert main(["verify", "--all"]) == 1

    def test_verify_requires_id(self, cli_service) -> None:
        assert main(["verify"]) == 1

    def test_restore_declined(self, cli_service, primary, data) -> None:
        main(["full"])
        data.collections["orders"] = []
        with patch("builtins.input", return_value="n"):
            assert main(["restore", _only_id(primary)]) == 0
        assert data.collections["orders"] == []

    def test_restore(self, cli_service, primary, data) -> None:
        main(["full"])
        record = primary.records[_only_id(primary)]
        data.collections["orders"] = []
        assert main(["restore", record.backup_id, "--yes"]) == 0
        assert compute_checksum(data.collections) == record.checksum

    def test_restore_corrupt_exits_1(self, cli_service, primary, storage, capsys) -> None:
        main(["full"])
        record = primary.records[_only_id(primary)]
        storage.corrupt(record.cid)
        assert main(["restore", record.backup_id, "-y"]) == 1
        assert "CHECKSUM_MISMATCH" in capsys.readouterr().out

    def test_emergency_refused_with_primary_up(self, cli_service) -> None:
        assert main(["emergency", "--yes"]) == 1

    def test_emergency(self, cli_service, primary, data) -> None:
        main(["full"])
        data.collections["users"] = []
        primary.available = False
        assert main(["emergency", "--yes"]) == 0
        assert len(data.collections["users"]) == 40

    def test_delete_and_cleanup(self, cli_service, primary) -> None:
        for _ in range(3):
            main(["full"])
        oldest = min(primary.records)
        assert main(["delete", oldest]) == 0
        assert primary.records[oldest].status is BackupStatus.DELETED

        assert main(["cleanup", "--max-full", "1"]) == 0
        live = [r for r in primary.records.values() if r.status is BackupStatus.ACTIVE]
        assert len(live) == 1

    def test_stats(self, cli_service) -> None:
        main(["full"])
        assert main(["stats"]) == 0

    def test_mirror_pending(self, cli_service, primary, capsys) -> None:
        main(["full"])
        backup_id = _only_id(primary)
        primary.records[backup_id] = primary.records[backup_id].model_copy(
            update={"status": BackupStatus.LEDGER_PENDING}
        )
        assert main(["mirror-pending"]) == 0
        assert primary.records[backup_id].status is BackupStatus.ACTIVE

    def test_schedule_once(self, cli_service, primary, capsys) -> None:
        assert main(["schedule", "--once"]) == 0
        record = primary.records[_only_id(primary)]
        assert record.trigger_method.value == "CRON"
        assert record.status is BackupStatus.ACTIVE
        assert "full, storage, cleanup" in capsys.readouterr().out

    def test_schedule_once_failure_exits_1(self, cli_service, storage) -> None:
        storage.available = False
        assert main(["schedule", "--once"]) == 1

    def test_schedule_disabled(self, cli_service, primary) -> None:
        assert main(["schedule"]) == 1
        assert primary.records == {}

    def test_verify_ledger_needs_file_ledger(self, cli_service) -> None:
        assert main(["verify-ledger"]) == 1

    def test_missing_config(self, tmp_path) -> None:
        assert main(["--config", str(tmp_path / "missing.toml"), "list"]) == 1
