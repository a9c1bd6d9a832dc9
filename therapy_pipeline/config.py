"""Configuration for the therapy recommendation pipeline.

All settings come from environment variables so the same code runs against
a local FHIR sandbox, a hospital pharmacy stock service, or test stubs.
"""

import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Pipeline configuration loaded from the environment."""

    PIPELINE_VERSION = "1.0.0"

    # Clinical data source (FHIR R4)
    FHIR_BASE_URL = os.environ.get("FHIR_BASE_URL", "http://localhost:8081/fhir")
    FHIR_TIMEOUT_SECONDS = float(os.environ.get("FHIR_TIMEOUT_SECONDS", "30"))

    # Pharmacy stock source
    STOCK_API_URL = os.environ.get("STOCK_API_URL")
    STOCK_TIMEOUT_SECONDS = float(os.environ.get("STOCK_TIMEOUT_SECONDS", "5"))

    # Advisory text generator (local Ollama keeps PHI on-premise)
    ADVISORY_ENABLED = _env_bool("ADVISORY_ENABLED")
    OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "llama3.1:8b")
    ADVISORY_TIMEOUT_SECONDS = float(os.environ.get("ADVISORY_TIMEOUT_SECONDS", "20"))

    # Audit sink
    AUDIT_DB_PATH = os.environ.get(
        "THERAPY_AUDIT_DB_PATH", "~/.therapy_pipeline/decisions.db"
    )

    # Pipeline bounds
    MAX_CANDIDATES = int(os.environ.get("MAX_CANDIDATES", "3"))
    SCREENING_WORKERS = int(os.environ.get("SCREENING_WORKERS", "4"))

    @classmethod
    def is_stock_api_configured(cls) -> bool:
        """Check if an HTTP stock service is configured."""
        return bool(cls.STOCK_API_URL)

    @classmethod
    def is_advisory_enabled(cls) -> bool:
        """Check if the advisory text generator should be used."""
        return cls.ADVISORY_ENABLED and bool(cls.OLLAMA_BASE_URL)
