"""
Tests for the CLI interface.
"""
import json
import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import yaml
from typer.testing import CliRunner

from usage_keeper.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from usage_keeper.storage.models import RequestDetail, StatisticsSnapshot, TokenStats
from usage_keeper.storage.repository import SQLiteStore

runner = CliRunner()

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _snapshot() -> StatisticsSnapshot:
    snapshot = StatisticsSnapshot()
    snapshot.add("sk-a", "gpt-4o", RequestDetail(
        timestamp=BASE_TIME,
        tokens=TokenStats(input_tokens=100, output_tokens=50, total_tokens=150)
    ))
    snapshot.add("sk-a", "gpt-4o", RequestDetail(
        timestamp=BASE_TIME + timedelta(seconds=1),
        tokens=TokenStats(input_tokens=10, output_tokens=5, total_tokens=15),
        failed=True
    ))
    snapshot.add("sk-b", "o1", RequestDetail(
        timestamp=BASE_TIME + timedelta(seconds=2),
        tokens=TokenStats(input_tokens=1000, output_tokens=500, reasoning_tokens=200, total_tokens=1700)
    ))
    return snapshot


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "usage.db")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed(self, snapshot: StatisticsSnapshot):
        with SQLiteStore.open(self.db_path) as store:
            store.ensure_schema()
            store.persist_snapshot(snapshot)

    def test_no_command_shows_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init_creates_database(self):
        result = runner.invoke(app, ["--db", self.db_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(self.db_path)

    def test_init_uses_config_file(self):
        """The database path can come from the config file."""
        db_path = os.path.join(self.temp_dir, "nested", "from-config.db")
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"usage_statistics": {"database_path": db_path}}, f)

        result = runner.invoke(app, ["--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(db_path)

    def test_invalid_config_fails(self):
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"usage_statistics": {"busy_timeout": -1}}, f)

        result = runner.invoke(app, ["--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "busy_timeout" in result.output

    def test_stats_empty_database(self):
        result = runner.invoke(app, ["--db", self.db_path, "stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage records found" in result.output

    def test_stats_shows_totals(self):
        self._seed(_snapshot())

        result = runner.invoke(app, ["--db", self.db_path, "stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage Statistics" in result.output
        assert "sk-a" in result.output
        assert "o1" in result.output
        assert "1,865" in result.output
        assert "Loaded 3 record(s)" in result.output

    def test_export_writes_snapshot(self):
        self._seed(_snapshot())
        output_path = os.path.join(self.temp_dir, "export.json")

        result = runner.invoke(app, ["--db", self.db_path, "export", output_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Exported 3 record(s)" in result.output
        with open(output_path, encoding='utf-8') as f:
            data = json.load(f)
        assert StatisticsSnapshot.from_dict(data) == _snapshot()

    def test_import_skips_duplicates(self):
        input_path = os.path.join(self.temp_dir, "import.json")
        with open(input_path, 'w', encoding='utf-8') as f:
            json.dump(_snapshot().to_dict(), f)

        first = runner.invoke(app, ["--db", self.db_path, "import", input_path])
        second = runner.invoke(app, ["--db", self.db_path, "import", input_path])

        assert first.exit_code == EXIT_CODE_PASS
        assert "Imported 3 record(s), skipped 0 duplicate(s)" in first.output
        assert second.exit_code == EXIT_CODE_PASS
        assert "Imported 0 record(s), skipped 3 duplicate(s)" in second.output

    def test_import_malformed_snapshot_fails(self):
        input_path = os.path.join(self.temp_dir, "import.json")
        with open(input_path, 'w', encoding='utf-8') as f:
            json.dump({"apis": {"sk-a": {"models": {"gpt-4o": {"details": [{}]}}}}}, f)

        result = runner.invoke(app, ["--db", self.db_path, "import", input_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error importing usage" in result.output

    def test_import_missing_file_fails(self):
        result = runner.invoke(
            app, ["--db", self.db_path, "import", os.path.join(self.temp_dir, "missing.json")]
        )
        assert result.exit_code == EXIT_CODE_FAIL

    def test_export_then_import_keeps_nanosecond_records(self):
        """Re-importing an export of nanosecond-precision rows adds nothing."""
        self._seed(StatisticsSnapshot())
        stamp = "2024-01-01T12:00:00.123456789Z"
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                "INSERT INTO usage_records (api_key, model, timestamp, dedup_key) VALUES (?, ?, ?, ?)",
                ("sk-a", "gpt-4o", stamp, f"sk-a|gpt-4o|{stamp}|||false|0|0|0|0|0")
            )
            conn.commit()
        finally:
            conn.close()
        output_path = os.path.join(self.temp_dir, "export.json")

        runner.invoke(app, ["--db", self.db_path, "export", output_path])
        result = runner.invoke(app, ["--db", self.db_path, "import", output_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Imported 0 record(s), skipped 1 duplicate(s)" in result.output
        with open(output_path, encoding='utf-8') as f:
            data = json.load(f)
        assert data["apis"]["sk-a"]["models"]["gpt-4o"]["details"][0]["timestamp"] == stamp
