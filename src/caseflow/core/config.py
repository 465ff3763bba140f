"""
Caseflow Configuration

Centralized configuration for the case workflow engine and its API.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


# Stage SLA defaults in hours (time a case may spend in a stage before it counts as delayed)
DEFAULT_SLA_HOURS: Dict[str, float] = {
    "enquiry": 48.0,
    "estimation": 120.0,
    "quotation": 72.0,
    "order": 48.0,
    "production": 720.0,
    "delivery": 168.0,
}


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class WorkflowConfig:
    """Configuration for the case workflow engine."""

    def __init__(self):
        self.db_path = Path(os.getenv("CASEFLOW_DB_PATH", "./data/caseflow.db"))

        # Document numbering (PREFIX/DOCTYPE/FY/SEQ)
        self.document_prefix = os.getenv("CASEFLOW_DOCUMENT_PREFIX", "VESPL")
        self.case_doctype = os.getenv("CASEFLOW_CASE_DOCTYPE", "EQ")
        self.fiscal_year_start_month = int(os.getenv("CASEFLOW_FISCAL_YEAR_START_MONTH", "4"))
        self.sequence_padding = int(os.getenv("CASEFLOW_SEQUENCE_PADDING", "3"))

        self.sla_hours = self._load_sla_hours()

        # Observability
        self.service_name = os.getenv("SERVICE_NAME", "caseflow-backend")
        self.service_version = os.getenv("APP_VERSION", "1.0.0")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_structured = _env_bool("LOG_STRUCTURED", "true")
        self.otlp_endpoint: Optional[str] = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None
        self.otel_console = _env_bool("OTEL_CONSOLE_EXPORT")

        # Server settings
        self.api_host = os.getenv("API_HOST", "0.0.0.0")
        self.api_port = int(os.getenv("API_PORT", "9300"))

    def _load_sla_hours(self) -> Dict[str, float]:
        """Per-stage SLA, overridable with CASEFLOW_SLA_<STAGE>_HOURS."""
        sla = dict(DEFAULT_SLA_HOURS)
        for stage in DEFAULT_SLA_HOURS:
            raw = os.getenv(f"CASEFLOW_SLA_{stage.upper()}_HOURS")
            if raw:
                sla[stage] = float(raw)
        return sla

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not 1 <= self.fiscal_year_start_month <= 12:
            issues.append(
                f"ERROR: CASEFLOW_FISCAL_YEAR_START_MONTH must be 1-12, got {self.fiscal_year_start_month}"
            )

        for stage, hours in self.sla_hours.items():
            if hours <= 0:
                issues.append(f"ERROR: SLA for {stage} must be positive, got {hours}")

        if "/" in self.document_prefix or "/" in self.case_doctype:
            issues.append("ERROR: document prefix and doctype must not contain '/'")

        return issues

    def __repr__(self) -> str:
        return (
            f"WorkflowConfig(db_path={self.db_path}, "
            f"prefix={self.document_prefix}, doctype={self.case_doctype})"
        )


_config: Optional[WorkflowConfig] = None


def get_config() -> WorkflowConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = WorkflowConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (environment changed)."""
    global _config
    _config = None
