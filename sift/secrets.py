"""Loaders for the key-value files that back sift.config.

Two sources, same shape: a SOPS-encrypted ``.env.enc`` file decrypted on the
fly, or a plain ``.env`` file for local use.
"""

import logging
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def load_secrets(encrypted_path: str | Path) -> dict[str, str | None]:
    """Decrypt a SOPS-encrypted .env file and return its key-value pairs.

    Raises:
        FileNotFoundError: If the encrypted file does not exist.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise FileNotFoundError(f"Encrypted settings file not found: {path}")

    result = subprocess.run(
        ["sops", "--decrypt", str(path)],
        capture_output=True,
        text=True,
        check=True,
    )
    return dict(dotenv_values(stream=StringIO(result.stdout)))


def load_dotenv_fallback(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file. A missing file yields an empty mapping."""
    path = Path(dotenv_path)
    if not path.exists():
        logger.debug("Settings file not found at %s, using defaults", path)
        return {}
    return dict(dotenv_values(path))
