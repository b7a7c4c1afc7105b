"""Webhook registry with SQLite backend.

Administrators write configurations; the dispatch path only reads them and
appends delivery records.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiosqlite

from switchboard.errors import InvalidConfiguration
from switchboard.models import Capability, WebhookConfig, utcnow_iso
from switchboard.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS feature_webhooks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feature TEXT NOT NULL,
    name TEXT NOT NULL,
    capability TEXT,
    endpoint_url TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    http_method TEXT NOT NULL DEFAULT 'POST',
    timeout_seconds INTEGER NOT NULL DEFAULT 30,
    retry_attempts INTEGER NOT NULL DEFAULT 3,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    avg_response_time INTEGER NOT NULL DEFAULT 0,
    last_triggered TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_feature_webhooks_feature
    ON feature_webhooks (feature, is_active);
CREATE TABLE IF NOT EXISTS webhook_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    webhook_id INTEGER NOT NULL REFERENCES feature_webhooks(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    status_code INTEGER,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    is_test INTEGER NOT NULL DEFAULT 0,
    triggered_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_webhook_logs_webhook
    ON webhook_logs (webhook_id, triggered_at);
"""

_COLUMNS = (
    "id, feature, name, capability, endpoint_url, is_active, http_method, "
    "timeout_seconds, retry_attempts, success_count, failure_count, "
    "avg_response_time, last_triggered"
)

_METHODS = ("GET", "POST", "PUT", "DELETE")


def validate_webhook_config(config: WebhookConfig) -> list[str]:
    """Return a list of validation errors (empty when the config is valid)."""
    errors: list[str] = []

    if not config.name.strip():
        errors.append("Webhook name is required")
    if not config.feature.strip():
        errors.append("Webhook feature is required")

    url = config.endpoint_url.strip()
    if not url:
        errors.append("Webhook URL is required")
    elif not url.startswith("/"):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append("Webhook URL must be absolute (http/https) or start with '/'")

    if config.http_method.upper() not in _METHODS:
        errors.append("Method must be GET, POST, PUT, or DELETE")
    if not 0 <= config.retry_attempts <= 10:
        errors.append("Retry attempts must be between 0 and 10")
    if not 1 <= config.timeout_seconds <= 300:
        errors.append("Timeout must be between 1 and 300 seconds")

    return errors


def _row_to_config(row: Any) -> WebhookConfig:
    return WebhookConfig(
        id=row[0],
        feature=row[1],
        name=row[2],
        capability=Capability(row[3]) if row[3] else None,
        endpoint_url=row[4],
        is_active=bool(row[5]),
        http_method=row[6],
        timeout_seconds=row[7],
        retry_attempts=row[8],
        success_count=row[9],
        failure_count=row[10],
        avg_response_time_ms=row[11],
        last_triggered=row[12],
    )


class WebhookRegistry:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def add(self, config: WebhookConfig) -> WebhookConfig:
        """Validate and insert a webhook configuration."""
        assert self._db is not None
        errors = validate_webhook_config(config)
        if errors:
            raise InvalidConfiguration("; ".join(errors))

        cursor = await self._db.execute(
            "INSERT INTO feature_webhooks (feature, name, capability, endpoint_url, "
            "is_active, http_method, timeout_seconds, retry_attempts, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                config.feature,
                config.name,
                config.capability.value if config.capability else None,
                config.endpoint_url.strip(),
                int(config.is_active),
                config.http_method.upper(),
                config.timeout_seconds,
                config.retry_attempts,
                utcnow_iso(),
            ),
        )
        await self._db.commit()
        config.id = cursor.lastrowid
        log.info("webhook_registered", webhook_id=config.id, name=config.name, feature=config.feature)
        return config

    async def get(self, webhook_id: int) -> WebhookConfig | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM feature_webhooks WHERE id = ?",
            (webhook_id,),
        )
        row = await cursor.fetchone()
        return _row_to_config(row) if row else None

    async def list_active(self, feature: str) -> list[WebhookConfig]:
        """Active webhooks for a feature in insertion order."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM feature_webhooks "
            "WHERE feature = ? AND is_active = 1 ORDER BY id ASC",
            (feature,),
        )
        rows = await cursor.fetchall()
        return [_row_to_config(row) for row in rows]

    async def set_active(self, webhook_id: int, active: bool) -> bool:
        """Toggle a webhook. Returns True if the webhook exists."""
        assert self._db is not None
        cursor = await self._db.execute(
            "UPDATE feature_webhooks SET is_active = ? WHERE id = ?",
            (int(active), webhook_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Delivery tracking
    # ------------------------------------------------------------------

    async def record_delivery(
        self,
        webhook_id: int,
        success: bool,
        response_time_ms: int,
        attempts: int = 1,
        error: str | None = None,
        status_code: int | None = None,
        is_test: bool = False,
    ) -> None:
        """Append a delivery log row and roll it into the webhook's counters."""
        assert self._db is not None
        now = utcnow_iso()
        await self._db.execute(
            "INSERT INTO webhook_logs (webhook_id, status, status_code, response_time_ms, "
            "error_message, retry_count, is_test, triggered_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                webhook_id,
                "success" if success else "failed",
                status_code,
                response_time_ms,
                error,
                max(attempts - 1, 0),
                int(is_test),
                now,
            ),
        )
        # Running average over every recorded delivery
        await self._db.execute(
            "UPDATE feature_webhooks SET "
            "avg_response_time = (avg_response_time * (success_count + failure_count) + ?) "
            "/ (success_count + failure_count + 1), "
            "success_count = success_count + ?, "
            "failure_count = failure_count + ?, "
            "last_triggered = ? "
            "WHERE id = ?",
            (response_time_ms, int(success), int(not success), now, webhook_id),
        )
        await self._db.commit()

    async def recent_deliveries(self, webhook_id: int, limit: int = 20) -> list[dict]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT status, status_code, response_time_ms, error_message, retry_count, "
            "is_test, triggered_at FROM webhook_logs WHERE webhook_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (webhook_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            {
                "status": row[0],
                "status_code": row[1],
                "response_time_ms": row[2],
                "error_message": row[3],
                "retry_count": row[4],
                "is_test": bool(row[5]),
                "triggered_at": row[6],
            }
            for row in rows
        ]
