"""Unit tests for the command-line interface."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from mailbox_cleanup.cli import main
from mailbox_cleanup.config import get_settings
from mailbox_cleanup.index import EmailIndexRepository
from mailbox_cleanup.models import EmailRecord

POLICY = {
    "id": "old-spam",
    "name": "Old spam",
    "criteria": {"spam_score_min": 0.9},
    "action": {"type": "delete"},
}


@pytest.fixture
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield tmp_path / "cli.sqlite3"
    get_settings.cache_clear()
    # main() points structlog at the captured stderr of this test.
    structlog.reset_defaults()


def _run(db: Path, *args: str) -> int:
    return main(["--db", str(db), *args])


class TestCli:
    """Test suite for the mailbox-cleanup CLI."""

    def test_policy_create_show_and_list(self, db, capsys) -> None:
        """Test creating a policy and reading it back."""
        assert _run(db, "policy", "create", json.dumps(POLICY)) == 0
        assert _run(db, "policy", "show", "old-spam") == 0
        assert _run(db, "policy", "list") == 0

        out = capsys.readouterr().out
        assert '"id": "old-spam"' in out
        assert "old-spam  delete" in out

    def test_policy_from_file_and_seed(self, db, tmp_path, capsys) -> None:
        """Test @file definitions and default seeding."""
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(POLICY), encoding="utf-8")

        assert _run(db, "policy", "create", f"@{path}") == 0
        assert _run(db, "policy", "seed") == 0

        assert "Created 0 default policies" in capsys.readouterr().out

    def test_dry_run_cleanup(self, db, capsys) -> None:
        """Test triggering a dry run and inspecting the job."""
        repo = EmailIndexRepository(db)
        repo.initialize()
        repo.upsert_many(
            [EmailRecord(gmail_id=f"m{i}", internal_date_ms=1, spam_score=1.0) for i in range(3)]
        )
        _run(db, "policy", "create", json.dumps(POLICY))
        capsys.readouterr()

        assert _run(db, "cleanup", "trigger", "old-spam", "--dry-run") == 0
        out = capsys.readouterr().out
        assert '"emails_processed": 3' in out
        assert '"dry_run": true' in out

        assert _run(db, "job", "list", "--status", "COMPLETED") == 0
        assert "COMPLETED" in capsys.readouterr().out

    def test_errors_return_non_zero(self, db, capsys) -> None:
        """Test that domain errors are reported on stderr with exit code 1."""
        assert _run(db, "policy", "show", "missing") == 1
        assert _run(db, "policy", "create", "[1, 2]") == 1
        assert "Error:" in capsys.readouterr().err

    def test_config_set_and_show(self, db, capsys) -> None:
        """Test updating automation configuration from the command line."""
        changes = {"continuous_cleanup": {"enabled": True, "target_emails_per_minute": 30}}

        assert _run(db, "config", "set", json.dumps(changes)) == 0
        capsys.readouterr()
        assert _run(db, "config", "show") == 0

        shown = json.loads(capsys.readouterr().out)
        assert shown["continuous_cleanup"]["enabled"] is True
        assert shown["continuous_cleanup"]["target_emails_per_minute"] == 30

    def test_index_stats(self, db, capsys) -> None:
        """Test index stats output."""
        repo = EmailIndexRepository(db)
        repo.initialize()
        repo.upsert_many([EmailRecord(gmail_id="m1", from_email="shop@example.com")])

        assert _run(db, "index", "stats") == 0
        out = capsys.readouterr().out
        assert "Total messages: 1" in out
        assert "shop@example.com" in out

    def test_policy_recommend(self, db, capsys) -> None:
        """Test that recommendations are printed as JSON."""
        repo = EmailIndexRepository(db)
        repo.initialize()
        repo.upsert_many(
            [EmailRecord(gmail_id=f"m{i}", internal_date_ms=1, spam_score=0.95) for i in range(12)]
        )

        assert _run(db, "policy", "recommend") == 0

        report = json.loads(capsys.readouterr().out)
        assert report["spam_emails"] == 12
        assert report["old_emails"] == 12
        assert [r["name"] for r in report["recommendations"]] == ["Spam Email Cleanup"]
