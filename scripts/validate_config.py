#!/usr/bin/env python3
"""
Configuration Validation Script for the After-sales Worker

This script validates the worker configuration before deployment to catch
common mistakes.

Usage:
    python3 scripts/validate_config.py
    python3 scripts/validate_config.py --config path/to/config.json
    python3 scripts/validate_config.py --env-only  # Only check environment variables
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from aftersales_core.config import Config, parse_config  # noqa: E402


class ConfigValidator:
    """Validates worker configuration files and environment variables."""

    def __init__(self, config_path: str = "config.json", env_path: str = ".env"):
        self.config_path = Path(config_path)
        self.env_path = Path(env_path)
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []

    def validate_all(self) -> bool:
        """Run all validation checks. Returns True if no errors found."""
        print("After-sales Configuration Validator")
        print("=" * 60)

        self.validate_environment()

        if self.config_path.exists():
            self.validate_config_json()
        else:
            self.errors.append(f"Config file not found: {self.config_path}")

        self.print_results()

        return len(self.errors) == 0

    def validate_environment(self):
        """Check environment variables the worker reads."""
        print("\nChecking Environment Variables...")

        if self.env_path.exists():
            self.info.append(f"Found {self.env_path}")
        else:
            self.info.append(f"{self.env_path} not found - relying on process environment")

        level = os.getenv("LOG_LEVEL", "INFO").upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            self.errors.append(f"LOG_LEVEL has unknown value {level!r}")

        timeout = os.getenv("DB_CONNECT_TIMEOUT")
        if timeout is not None:
            try:
                if float(timeout) <= 0:
                    self.errors.append("DB_CONNECT_TIMEOUT must be positive")
            except ValueError:
                self.errors.append(f"DB_CONNECT_TIMEOUT must be a number (got {timeout!r})")

        db_path = os.getenv("AFTERSALES_DB_PATH")
        if db_path:
            self._check_db_directory(Path(db_path))

    def validate_config_json(self):
        """Parse config.json with the same rules the worker uses."""
        print(f"\nChecking {self.config_path}...")

        try:
            with self.config_path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except json.JSONDecodeError as e:
            self.errors.append(f"Invalid JSON in {self.config_path}: {e}")
            return

        try:
            config = parse_config(data)
        except ValueError as e:
            self.errors.append(str(e))
            return

        self._check_semantics(config)
        if not os.getenv("AFTERSALES_DB_PATH"):
            self._check_db_directory(Path(config.database_path))

    def _check_semantics(self, config: Config):
        timeouts = config.timeouts
        if timeouts.pending_return_hours < timeouts.pending_receive_hours:
            self.warnings.append(
                "timeouts.pending_return_hours is shorter than pending_receive_hours; "
                "customers get less time to ship than the merchant gets to inspect"
            )
        if timeouts.pending_approval_action == "approve":
            self.info.append("Cases left unreviewed past the approval window are auto-approved")

        auto = config.auto_approval
        if auto.enabled and auto.threshold_cents > 100_000:
            self.warnings.append(
                f"auto_approval.threshold_cents is {auto.threshold_cents}; large refunds will skip review"
            )

        webhook = config.notifications.webhook_url
        if webhook and webhook.startswith("http://"):
            self.warnings.append("notifications.webhook_url is not using HTTPS")
        if not webhook:
            self.info.append("No webhook configured - case events are not published")

        if not config.audit_retention.enabled:
            self.info.append("Audit retention disabled - audit entries are kept forever")

    def _check_db_directory(self, path: Path):
        directory = path.resolve().parent
        if not directory.exists():
            self.errors.append(f"Database directory does not exist: {directory}")
        elif not os.access(directory, os.W_OK):
            self.errors.append(f"Database directory is not writable: {directory}")

    def print_results(self):
        """Print validation results."""
        print("\n" + "=" * 60)
        print("VALIDATION RESULTS")
        print("=" * 60)

        if self.errors:
            print(f"\nERRORS ({len(self.errors)}):")
            for error in self.errors:
                print(f"   - {error}")

        if self.warnings:
            print(f"\nWARNINGS ({len(self.warnings)}):")
            for warning in self.warnings:
                print(f"   - {warning}")

        if self.info:
            print(f"\nINFO ({len(self.info)}):")
            for info_msg in self.info:
                print(f"   - {info_msg}")

        print("\n" + "=" * 60)
        if not self.errors:
            print("Configuration validation passed!")
        else:
            print(f"Configuration validation failed with {len(self.errors)} error(s)")
        print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Validate after-sales worker configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 scripts/validate_config.py
  python3 scripts/validate_config.py --config config.json
  python3 scripts/validate_config.py --env-only
        """
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config.json file (default: config.json)"
    )
    parser.add_argument(
        "--env-only",
        action="store_true",
        help="Only validate environment variables"
    )

    args = parser.parse_args()

    validator = ConfigValidator(config_path=args.config)

    if args.env_only:
        validator.validate_environment()
        validator.print_results()
        success = not validator.errors
    else:
        success = validator.validate_all()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
