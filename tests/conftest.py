"""Shared fixtures for Sift tests."""

import os

import pytest

from sift.store.database import Database
from sift.store.pending import PendingEmailStore
from sift.store.rules import RuleStore

USER = "me@gmail.com"
OTHER_USER = "other@gmail.com"


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("SIFT_USE_SOPS", "false")


@pytest.fixture()
def project_root():
    """Return the project root path."""
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


@pytest.fixture()
def db(tmp_path):
    """A fresh database file per test."""
    with Database(tmp_path / "sift.db") as database:
        yield database


@pytest.fixture()
def rule_store(db) -> RuleStore:
    return RuleStore(db)


@pytest.fixture()
def pending_store(db) -> PendingEmailStore:
    return PendingEmailStore(db)
