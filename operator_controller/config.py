"""
Controller Configuration

Settings come from environment variables; the skill catalog and workflow
templates come from a YAML file (config/catalog.yaml by default).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

from .errors import ValidationError
from .job_model import FailurePolicy

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_DATA_DIR = "data/operator"
DEFAULT_CATALOG_FILE = Path(__file__).parent.parent / "config" / "catalog.yaml"
DEFAULT_EXPIRY_SWEEP_SECONDS = 60
DEFAULT_WEBHOOK_TIMEOUT = 30.0

STATE_FILE_NAME = "state.json"
TRANSITIONS_FILE_NAME = "transitions.jsonl"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class ControllerConfig:
    """Runtime settings for the job controller."""
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    persist: bool = True
    catalog_file: Path = DEFAULT_CATALOG_FILE
    failure_policy: FailurePolicy = FailurePolicy.HALT
    approval_expiry_hours: float = 0  # 0 disables expiry
    expiry_sweep_seconds: int = DEFAULT_EXPIRY_SWEEP_SECONDS
    webhook_base_url: Optional[str] = None
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    log_level: str = "INFO"

    @property
    def state_file(self) -> Optional[Path]:
        return self.data_dir / STATE_FILE_NAME if self.persist else None

    @property
    def transitions_file(self) -> Optional[Path]:
        return self.data_dir / TRANSITIONS_FILE_NAME if self.persist else None

    @classmethod
    def from_env(cls) -> "ControllerConfig":
        """Build configuration from OPERATOR_* environment variables."""
        policy = os.getenv("OPERATOR_FAILURE_POLICY", FailurePolicy.HALT.value).lower()
        try:
            failure_policy = FailurePolicy(policy)
        except ValueError:
            raise ValidationError(f"Invalid OPERATOR_FAILURE_POLICY: {policy}")

        return cls(
            data_dir=Path(os.getenv("OPERATOR_DATA_DIR", DEFAULT_DATA_DIR)),
            persist=os.getenv("OPERATOR_PERSIST", "true").lower() in _TRUE_VALUES,
            catalog_file=Path(os.getenv("OPERATOR_CATALOG_FILE", str(DEFAULT_CATALOG_FILE))),
            failure_policy=failure_policy,
            approval_expiry_hours=float(os.getenv("OPERATOR_APPROVAL_EXPIRY_HOURS", "0")),
            expiry_sweep_seconds=int(os.getenv("OPERATOR_EXPIRY_SWEEP_SECONDS", str(DEFAULT_EXPIRY_SWEEP_SECONDS))),
            webhook_base_url=os.getenv("OPERATOR_WEBHOOK_BASE_URL") or None,
            webhook_timeout=float(os.getenv("OPERATOR_WEBHOOK_TIMEOUT", str(DEFAULT_WEBHOOK_TIMEOUT))),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def load_catalog(catalog_file: Path) -> Dict[str, Any]:
    """
    Read the skill catalog and workflow templates.

    Returns {"skills": [...], "workflows": [...]}; a missing file yields an
    empty catalog.
    """
    if not catalog_file.exists():
        logger.warning(f"Catalog file not found: {catalog_file}")
        return {"skills": [], "workflows": []}

    with open(catalog_file, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValidationError(f"Catalog file must contain a mapping: {catalog_file}")

    return {
        "skills": data.get("skills") or [],
        "workflows": data.get("workflows") or [],
    }
