"""Tests for the Sift CLI entry point."""

import json
import sqlite3

import click.testing
import pytest

from sift.cli import cli

USER = "me@gmail.com"


@pytest.fixture()
def runner():
    return click.testing.CliRunner()


@pytest.fixture(autouse=True)
def _db_path(tmp_path, monkeypatch):
    monkeypatch.setattr("sift.cli.DB_PATH", str(tmp_path / "sift.db"))


def _invoke(runner, *args, user=USER, **kwargs):
    return runner.invoke(cli, ["--user", user, *args], **kwargs)


@pytest.fixture()
def emails_file(tmp_path):
    path = tmp_path / "emails.json"
    path.write_text(
        json.dumps(
            [
                {
                    "email_id": "m1",
                    "from_email": "offers@spam.com",
                    "subject": "Win big",
                    "email_date": "2025-01-01T09:00:00+00:00",
                },
                {
                    "email_id": "m2",
                    "from_email": "noreply@custcomm.icicibank.com",
                    "subject": "Join our webinar",
                    "email_date": "2025-01-02T09:00:00+00:00",
                },
                {"email_id": "m3", "from_email": "friend@ham.com", "subject": "Lunch?"},
            ]
        )
    )
    return path


# ------------------------------------------------------------------
# user selection
# ------------------------------------------------------------------


def test_missing_user_fails(runner, monkeypatch):
    monkeypatch.setattr("sift.cli.DEFAULT_USER_EMAIL", "")
    result = runner.invoke(cli, ["stats"])
    assert result.exit_code != 0
    assert "No user given" in result.output


def test_default_user_from_config(runner, monkeypatch):
    monkeypatch.setattr("sift.cli.DEFAULT_USER_EMAIL", USER)
    result = runner.invoke(cli, ["stats"])
    assert result.exit_code == 0
    assert f"Rule statistics for {USER}" in result.output


# ------------------------------------------------------------------
# sift rule / sift criteria
# ------------------------------------------------------------------


class TestRuleCommands:
    def test_rule_add(self, runner):
        result = _invoke(
            runner, "rule", "add",
            "--from", "noreply@custcomm.icicibank.com",
            "--level", "subdomain",
            "--pattern", "webinar",
            "--action", "delete",
        )
        assert result.exit_code == 0, result.output
        assert "Added delete pattern 'webinar' for custcomm.icicibank.com" in result.output
        assert "(audit #1)" in result.output

    def test_rule_add_without_action_fails(self, runner):
        result = _invoke(runner, "rule", "add", "--from", "a@spam.com")
        assert result.exit_code != 0
        assert "validation_error" in result.output

    def test_criteria_get(self, runner):
        _invoke(runner, "criteria", "add", "domain", "--key", "example.com", "--action", "delete")
        _invoke(runner, "criteria", "add", "subdomain", "--key", "mail", "--parent-domain", "example.com", "--action", "keep")

        result = _invoke(runner, "criteria", "get", "domain", "--key", "example.com")

        assert result.exit_code == 0, result.output
        assert "Query completed" in result.output
        assert "domain: example.com (default: delete)" in result.output
        assert "mail.example.com  default=keep  patterns=0" in result.output

    def test_criteria_get_missing(self, runner):
        result = _invoke(runner, "criteria", "get", "domain", "--key", "example.com")
        assert result.exit_code != 0
        assert "not_found" in result.output

    def test_criteria_remove_missing_succeeds(self, runner):
        result = _invoke(runner, "criteria", "remove", "domain", "--key", "example.com")
        assert result.exit_code == 0
        assert "Domain example.com not found" in result.output


# ------------------------------------------------------------------
# sift emails / evaluate / summary / preview
# ------------------------------------------------------------------


class TestBatchCommands:
    def test_import_and_evaluate(self, runner, emails_file):
        result = _invoke(runner, "emails", "import", str(emails_file))
        assert result.exit_code == 0, result.output
        assert "Imported 3 email(s)." in result.output

        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")
        _invoke(
            runner, "rule", "add",
            "--from", "noreply@custcomm.icicibank.com",
            "--level", "subdomain",
            "--pattern", "webinar",
            "--action", "delete_1d",
        )

        result = _invoke(runner, "evaluate")
        assert result.exit_code == 0, result.output
        assert f"{USER}: 3 email(s) evaluated (delete: 1, delete_1d: 1, undecided: 1)" in result.output

        result = _invoke(runner, "summary")
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == f"Action summary for {USER}"
        assert lines[1].split()[:2] == ["delete", "1"]
        assert lines[2].split()[:2] == ["delete_1d", "1"]
        assert lines[3].split()[:2] == ["undecided", "1"]

    def test_import_bad_json(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        result = _invoke(runner, "emails", "import", str(path))
        assert result.exit_code != 0
        assert "Could not read" in result.output

    def test_evaluate_all_users(self, runner, emails_file):
        _invoke(runner, "emails", "import", str(emails_file))
        _invoke(runner, "emails", "import", str(emails_file), user="other@gmail.com")

        result = _invoke(runner, "evaluate", "--all-users")

        assert result.exit_code == 0, result.output
        assert "other@gmail.com: 3 email(s) evaluated" in result.output
        assert f"{USER}: 3 email(s) evaluated" in result.output

    def test_preview(self, runner, emails_file):
        _invoke(runner, "emails", "import", str(emails_file))
        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")
        _invoke(runner, "evaluate")

        result = _invoke(runner, "preview", "--action", "delete", "--min-age-days", "30")

        assert result.exit_code == 0, result.output
        assert "1 email(s) match delete" in result.output
        assert "offers@spam.com" in result.output
        assert "[domain.default]" in result.output

    def test_summary_empty(self, runner):
        result = _invoke(runner, "summary")
        assert result.exit_code == 0
        assert "No evaluated emails." in result.output

    def test_evaluate_storage_failure(self, runner, emails_file, monkeypatch):
        _invoke(runner, "emails", "import", str(emails_file))

        def _fail(self, emails):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr("sift.store.pending.PendingEmailStore.save_results", _fail)
        result = _invoke(runner, "evaluate")

        assert result.exit_code == 1
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "Error (persistence_error)" in result.output
        assert "disk I/O error" in result.output


# ------------------------------------------------------------------
# sift stats / audit / purge
# ------------------------------------------------------------------


class TestReporting:
    def test_stats(self, runner):
        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")

        result = _invoke(runner, "stats")

        assert result.exit_code == 0
        assert "Criteria entries:       1" in result.output

    def test_audit(self, runner):
        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")

        result = _invoke(runner, "audit", "--hours", "1")

        assert result.exit_code == 0
        assert "INSERT" in result.output
        assert "spam.com" in result.output

    def test_audit_empty(self, runner):
        result = _invoke(runner, "audit")
        assert "No audit entries during this period." in result.output

    def test_purge_requires_confirmation(self, runner):
        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")

        result = _invoke(runner, "purge", input="n\n")

        assert result.exit_code != 0
        assert "Criteria entries:       1" in _invoke(runner, "stats").output

    def test_purge(self, runner, emails_file):
        _invoke(runner, "emails", "import", str(emails_file))
        _invoke(runner, "rule", "add", "--from", "offers@spam.com", "--action", "delete")

        result = _invoke(runner, "purge", "--yes")

        assert result.exit_code == 0, result.output
        assert "3 pending emails" in result.output
        assert "Criteria entries:       0" in _invoke(runner, "stats").output

    def test_purge_storage_failure(self, runner, emails_file, monkeypatch):
        _invoke(runner, "emails", "import", str(emails_file))

        def _fail(self, user_email):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr("sift.store.pending.PendingEmailStore.clear", _fail)
        result = _invoke(runner, "purge", "--yes")

        assert result.exit_code == 1
        assert "Error (persistence_error): disk I/O error" in result.output
