"""Configuration management for the after-sales core."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from . import constants
from .enums import RefundReason

CONFIG_PATH = Path("config.json")

VALID_PENDING_APPROVAL_ACTIONS = {"approve", "flag"}


@dataclass(frozen=True)
class TimeoutSettings:
    pending_approval_hours: int = constants.PENDING_APPROVAL_TIMEOUT_HOURS
    pending_return_hours: int = constants.PENDING_RETURN_TIMEOUT_HOURS
    pending_receive_hours: int = constants.PENDING_RECEIVE_TIMEOUT_HOURS
    pending_approval_action: str = "approve"


@dataclass(frozen=True)
class AutoApprovalSettings:
    enabled: bool = True
    threshold_cents: int = constants.AUTO_APPROVE_THRESHOLD_CENTS
    low_risk_reasons: frozenset[RefundReason] = field(
        default_factory=lambda: frozenset(RefundReason(r) for r in constants.LOW_RISK_REASONS)
    )


@dataclass(frozen=True)
class ModificationSettings:
    max_modifications: int = constants.MAX_MODIFICATIONS


@dataclass(frozen=True)
class RefundSettings:
    max_retries: int = constants.MAX_REFUND_RETRIES


@dataclass(frozen=True)
class SweepSettings:
    interval_seconds: int = constants.SWEEP_INTERVAL_SECONDS
    batch_size: int = constants.SWEEP_BATCH_SIZE


@dataclass(frozen=True)
class AuditRetentionSettings:
    enabled: bool = False
    retention_days: int = constants.AUDIT_RETENTION_DAYS


@dataclass(frozen=True)
class NotificationSettings:
    webhook_url: str | None = None
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    database_path: str = "aftersales.db"
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    auto_approval: AutoApprovalSettings = field(default_factory=AutoApprovalSettings)
    modifications: ModificationSettings = field(default_factory=ModificationSettings)
    refunds: RefundSettings = field(default_factory=RefundSettings)
    sweep: SweepSettings = field(default_factory=SweepSettings)
    audit_retention: AuditRetentionSettings = field(default_factory=AuditRetentionSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)


def _coerce_int(value: Any, *, field_name: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer (got {value!r})")
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer (got {value!r})") from exc
    if result < minimum:
        raise ValueError(f"{field_name} must be at least {minimum} (got {result})")
    return result


def _require_object(payload: Any, name: str) -> dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError(f"{name} must be an object")
    return payload


def _parse_timeouts(payload: dict[str, Any] | None) -> TimeoutSettings:
    """Parse timeout windows from config payload."""
    payload = _require_object(payload, "timeouts")

    action = payload.get("pending_approval_action", "approve")
    if action not in VALID_PENDING_APPROVAL_ACTIONS:
        raise ValueError(
            "timeouts.pending_approval_action must be one of "
            f"{sorted(VALID_PENDING_APPROVAL_ACTIONS)} (got {action!r})"
        )

    return TimeoutSettings(
        pending_approval_hours=_coerce_int(
            payload.get("pending_approval_hours", constants.PENDING_APPROVAL_TIMEOUT_HOURS),
            field_name="timeouts.pending_approval_hours",
            minimum=1,
        ),
        pending_return_hours=_coerce_int(
            payload.get("pending_return_hours", constants.PENDING_RETURN_TIMEOUT_HOURS),
            field_name="timeouts.pending_return_hours",
            minimum=1,
        ),
        pending_receive_hours=_coerce_int(
            payload.get("pending_receive_hours", constants.PENDING_RECEIVE_TIMEOUT_HOURS),
            field_name="timeouts.pending_receive_hours",
            minimum=1,
        ),
        pending_approval_action=action,
    )


def _parse_low_risk_reasons(payload: Iterable[Any]) -> frozenset[RefundReason]:
    reasons = set()
    for item in payload:
        try:
            reasons.add(RefundReason(item))
        except ValueError as exc:
            raise ValueError(f"auto_approval.low_risk_reasons contains unknown reason {item!r}") from exc
    return frozenset(reasons)


def _parse_auto_approval(payload: dict[str, Any] | None) -> AutoApprovalSettings:
    """Parse auto-approval rule settings from config payload."""
    payload = _require_object(payload, "auto_approval")

    raw_reasons = payload.get("low_risk_reasons", list(constants.LOW_RISK_REASONS))
    if not isinstance(raw_reasons, list):
        raise ValueError("auto_approval.low_risk_reasons must be a list of reason codes")

    return AutoApprovalSettings(
        enabled=bool(payload.get("enabled", True)),
        threshold_cents=_coerce_int(
            payload.get("threshold_cents", constants.AUTO_APPROVE_THRESHOLD_CENTS),
            field_name="auto_approval.threshold_cents",
        ),
        low_risk_reasons=_parse_low_risk_reasons(raw_reasons),
    )


def _parse_modifications(payload: dict[str, Any] | None) -> ModificationSettings:
    payload = _require_object(payload, "modifications")
    return ModificationSettings(
        max_modifications=_coerce_int(
            payload.get("max_modifications", constants.MAX_MODIFICATIONS),
            field_name="modifications.max_modifications",
            minimum=1,
        )
    )


def _parse_refunds(payload: dict[str, Any] | None) -> RefundSettings:
    payload = _require_object(payload, "refunds")
    return RefundSettings(
        max_retries=_coerce_int(
            payload.get("max_retries", constants.MAX_REFUND_RETRIES),
            field_name="refunds.max_retries",
            minimum=1,
        )
    )


def _parse_sweep(payload: dict[str, Any] | None) -> SweepSettings:
    payload = _require_object(payload, "sweep")
    return SweepSettings(
        interval_seconds=_coerce_int(
            payload.get("interval_seconds", constants.SWEEP_INTERVAL_SECONDS),
            field_name="sweep.interval_seconds",
            minimum=1,
        ),
        batch_size=_coerce_int(
            payload.get("batch_size", constants.SWEEP_BATCH_SIZE),
            field_name="sweep.batch_size",
            minimum=1,
        ),
    )


def _parse_audit_retention(payload: dict[str, Any] | None) -> AuditRetentionSettings:
    payload = _require_object(payload, "audit_retention")
    return AuditRetentionSettings(
        enabled=bool(payload.get("enabled", False)),
        retention_days=_coerce_int(
            payload.get("retention_days", constants.AUDIT_RETENTION_DAYS),
            field_name="audit_retention.retention_days",
            minimum=1,
        ),
    )


def _parse_notifications(payload: dict[str, Any] | None) -> NotificationSettings:
    payload = _require_object(payload, "notifications")

    webhook_url = payload.get("webhook_url")
    if webhook_url is not None and not (
        isinstance(webhook_url, str) and webhook_url.startswith(("http://", "https://"))
    ):
        raise ValueError(f"notifications.webhook_url must be an http(s) URL (got {webhook_url!r})")

    raw_timeout = payload.get("timeout_seconds", 10.0)
    try:
        timeout_seconds = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"notifications.timeout_seconds must be a number (got {raw_timeout!r})") from exc
    if timeout_seconds <= 0:
        raise ValueError(f"notifications.timeout_seconds must be positive (got {timeout_seconds})")

    headers = _require_object(payload.get("headers"), "notifications.headers")

    return NotificationSettings(
        webhook_url=webhook_url,
        timeout_seconds=timeout_seconds,
        headers={str(k): str(v) for k, v in headers.items()},
    )


def parse_config(data: dict[str, Any]) -> Config:
    """Build a Config from an already-decoded JSON object."""
    if not isinstance(data, dict):
        raise ValueError("configuration root must be an object")

    return Config(
        database_path=str(data.get("database_path", "aftersales.db")),
        timeouts=_parse_timeouts(data.get("timeouts")),
        auto_approval=_parse_auto_approval(data.get("auto_approval")),
        modifications=_parse_modifications(data.get("modifications")),
        refunds=_parse_refunds(data.get("refunds")),
        sweep=_parse_sweep(data.get("sweep")),
        audit_retention=_parse_audit_retention(data.get("audit_retention")),
        notifications=_parse_notifications(data.get("notifications")),
    )


def load_config(config_path: str | Path = CONFIG_PATH) -> Config:
    """Load and parse configuration from JSON file."""
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            "Please copy config.example.json to config.json and fill in your values."
        )

    with path.open("r", encoding="utf-8") as file:
        data: dict[str, Any] = json.load(file)

    return parse_config(data)
