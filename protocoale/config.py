"""
Centralized configuration for Protocoale.

All configuration values should be imported from this module.
Supports environment variable overrides for containerization.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _find_project_root() -> Path:
    """Find project root by looking for pyproject.toml or .git."""
    current = Path(__file__).resolve().parent
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parent


@dataclass
class Config:
    """Protocoale configuration."""

    # ==========================================================================
    # Paths
    # ==========================================================================
    PROJECT_ROOT: Path = field(default_factory=_find_project_root)

    @property
    def DATA_DIR(self) -> Path:
        return Path(os.environ.get("DATA_DIR", str(self.PROJECT_ROOT / "data")))

    @property
    def PDF_STORAGE_DIR(self) -> Path:
        return Path(os.environ.get("PDF_STORAGE_DIR", str(self.DATA_DIR / "pdfs")))

    @property
    def IMAGE_STORAGE_DIR(self) -> Path:
        return Path(os.environ.get("IMAGE_STORAGE_DIR", str(self.DATA_DIR / "images")))

    # ==========================================================================
    # Database Connections
    # ==========================================================================
    @property
    def POSTGRES_DSN(self) -> str:
        return os.environ.get(
            "POSTGRES_DSN",
            "dbname=protocoale user=protocoale host=/var/run/postgresql"
        )

    # ==========================================================================
    # Source (CNAS)
    # ==========================================================================
    @property
    def CNAS_BASE_URL(self) -> str:
        return os.environ.get("CNAS_BASE_URL", "https://cnas.ro")

    @property
    def CNAS_PROTOCOLS_URL(self) -> str:
        return os.environ.get(
            "CNAS_PROTOCOLS_URL", f"{self.CNAS_BASE_URL}/protocoale-terapeutice/"
        )

    @property
    def USER_AGENT(self) -> str:
        return os.environ.get("USER_AGENT", "Protocoale/1.0 (+https://cnas.ro)")

    # ==========================================================================
    # Fetching
    # ==========================================================================
    @property
    def FETCH_TIMEOUT(self) -> float:
        return float(os.environ.get("FETCH_TIMEOUT", "30"))

    @property
    def FETCH_MAX_ATTEMPTS(self) -> int:
        return int(os.environ.get("FETCH_MAX_ATTEMPTS", "3"))

    @property
    def FETCH_BACKOFF_BASE(self) -> float:
        return float(os.environ.get("FETCH_BACKOFF_BASE", "1.0"))

    # ==========================================================================
    # Processing
    # ==========================================================================
    @property
    def NUM_WORKERS(self) -> int:
        return int(os.environ.get("NUM_WORKERS", "4"))

    @property
    def MIN_TITLE_LENGTH(self) -> int:
        return int(os.environ.get("MIN_TITLE_LENGTH", "3"))

    @property
    def RECENT_VERSIONS(self) -> int:
        return int(os.environ.get("RECENT_VERSIONS", "5"))

    @property
    def RECENT_RUNS(self) -> int:
        return int(os.environ.get("RECENT_RUNS", "5"))

    @property
    def LOG_LEVEL(self) -> str:
        return os.environ.get("LOG_LEVEL", "INFO")

    # ==========================================================================
    # Validation
    # ==========================================================================
    def validate(self) -> list[str]:
        """Return list of configuration errors."""
        errors = []

        if not self.PROJECT_ROOT.exists():
            errors.append(f"PROJECT_ROOT does not exist: {self.PROJECT_ROOT}")

        if not self.POSTGRES_DSN:
            errors.append("POSTGRES_DSN not set")

        if self.FETCH_MAX_ATTEMPTS < 1:
            errors.append(f"FETCH_MAX_ATTEMPTS must be >= 1, got {self.FETCH_MAX_ATTEMPTS}")

        if self.NUM_WORKERS < 1:
            errors.append(f"NUM_WORKERS must be >= 1, got {self.NUM_WORKERS}")

        if not self.CNAS_PROTOCOLS_URL.startswith(("http://", "https://")):
            errors.append(f"CNAS_PROTOCOLS_URL is not an http(s) URL: {self.CNAS_PROTOCOLS_URL}")

        return errors

    def ensure_dirs(self):
        """Create required directories if they don't exist."""
        self.PDF_STORAGE_DIR.mkdir(parents=True, exist_ok=True)
        self.IMAGE_STORAGE_DIR.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return (
            f"Config(\n"
            f"  PROJECT_ROOT={self.PROJECT_ROOT}\n"
            f"  POSTGRES_DSN={self.POSTGRES_DSN[:30]}...\n"
            f"  CNAS_PROTOCOLS_URL={self.CNAS_PROTOCOLS_URL}\n"
            f"  DATA_DIR={self.DATA_DIR}\n"
            f"  NUM_WORKERS={self.NUM_WORKERS}\n"
            f")"
        )


# Global config instance
config = Config()


# Convenience exports
POSTGRES_DSN = config.POSTGRES_DSN
CNAS_PROTOCOLS_URL = config.CNAS_PROTOCOLS_URL
FETCH_MAX_ATTEMPTS = config.FETCH_MAX_ATTEMPTS
NUM_WORKERS = config.NUM_WORKERS
