"""
Configuration management for the sync tool
"""

import logging
import os
from typing import Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config/config.yaml"

GLOBAL_DEFAULTS = {
    "workers": 3,
    "parallel": False,
    "sync_schedule": "*/15 * * * *",
    "spool_file": "data/observations.jsonl",
    "log_file": "booksync.log",
    "log_level": "INFO",
}

MATCHING_DEFAULTS = {
    "max_edit_distance_ratio": 0.30,
    "sync_threshold": 0.05,
}


class Config:
    """Configuration class that loads settings from config/config.yaml (YAML)"""

    def __init__(self, config_path: Optional[str] = None) -> None:
        self.logger = logging.getLogger(__name__)
        self._load_env()
        self.config_path = config_path or os.getenv("BOOKSYNC_CONFIG", DEFAULT_CONFIG_PATH)
        self._load_config()
        self._validate_config()

    def _load_env(self) -> None:
        """Load secrets.env and .env so they can override the YAML file"""
        if os.path.exists("secrets.env"):
            load_dotenv("secrets.env")
            self.logger.info("Loaded secrets from secrets.env")

        if os.path.exists(".env"):
            load_dotenv(".env")
            self.logger.debug("Loaded additional configuration from .env")

    def _load_config(self) -> None:
        if not os.path.exists(self.config_path):
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        with open(self.config_path, "r") as f:
            config = yaml.safe_load(f) or {}

        self.global_config = {**GLOBAL_DEFAULTS, **(config.get("global") or {})}
        self.matching_config = {**MATCHING_DEFAULTS, **(config.get("matching") or {})}

        # Environment overrides
        if os.getenv("BOOKSYNC_DATABASE"):
            self.global_config["database"] = os.environ["BOOKSYNC_DATABASE"]
        if os.getenv("BOOKSYNC_LOG_LEVEL"):
            self.global_config["log_level"] = os.environ["BOOKSYNC_LOG_LEVEL"].upper()

        self.logger.info(f"Loaded configuration from {self.config_path}")

    def _validate_config(self) -> None:
        errors = []
        for key in ["database", "timezone"]:
            if not self.global_config.get(key):
                errors.append(f"Missing global config: {key}")

        workers = self.global_config.get("workers")
        if not isinstance(workers, int) or workers < 1:
            errors.append(f"global.workers must be a positive integer, got {workers!r}")

        for key in ["max_edit_distance_ratio", "sync_threshold"]:
            value = self.matching_config.get(key)
            if not isinstance(value, (int, float)) or not 0 < value <= 1:
                errors.append(f"matching.{key} must be a number in (0, 1], got {value!r}")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
            self.logger.error(error_msg)
            raise ValueError(error_msg)
        self.logger.info("Configuration validation passed")

    def get_global(self) -> dict:
        return self.global_config

    def get_matching(self) -> dict:
        return self.matching_config

    def get_cron_config(self) -> dict:
        """Get cron configuration from global settings"""
        return {
            "schedule": self.global_config.get("sync_schedule", GLOBAL_DEFAULTS["sync_schedule"]),
            "timezone": self.global_config.get("timezone", "Etc/UTC"),
        }

    def __str__(self) -> str:
        return f"Config: global={self.global_config}, matching={self.matching_config}"
