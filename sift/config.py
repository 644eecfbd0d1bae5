"""Single source of truth for all configuration.

All modules import from here, never from os.environ directly. Values come
from secrets/internal.env (or its SOPS-encrypted twin when
SIFT_USE_SOPS=true); process environment variables win over file values.
"""

import os
from pathlib import Path

from sift.secrets import load_dotenv_fallback, load_secrets

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("SIFT_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str | None]:
    """Load settings for a scope, overlaid with matching environment variables."""
    if USE_SOPS:
        values = load_secrets(PROJECT_ROOT / f"secrets/{scope}.env.enc")
    else:
        values = load_dotenv_fallback(PROJECT_ROOT / f"secrets/{scope}.env")
    values.update({k: v for k, v in os.environ.items() if k.startswith("SIFT_")})
    return values


_internal = _load("internal")

DB_PATH: str = _internal.get("SIFT_DB_PATH") or str(PROJECT_ROOT / "data" / "sift.db")
DEFAULT_USER_EMAIL: str = _internal.get("SIFT_USER_EMAIL") or ""
PREVIEW_LIMIT: int = int(_internal.get("SIFT_PREVIEW_LIMIT") or "100")
