"""Tests for the settings-file loaders."""

import pytest

from sift.secrets import load_dotenv_fallback, load_secrets


class TestDotenvFallback:
    def test_reads_values(self, tmp_path):
        path = tmp_path / "internal.env"
        path.write_text("SIFT_DB_PATH=/tmp/x.db\nSIFT_PREVIEW_LIMIT=25\n")

        values = load_dotenv_fallback(path)

        assert values == {"SIFT_DB_PATH": "/tmp/x.db", "SIFT_PREVIEW_LIMIT": "25"}

    def test_missing_file_is_empty(self, tmp_path):
        assert load_dotenv_fallback(tmp_path / "absent.env") == {}


class TestSops:
    def test_missing_encrypted_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_secrets(tmp_path / "internal.env.enc")
