"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-enforcer", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/freight",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Monitoring ==========
    monitoring_interval_seconds: int = Field(
        default=300,
        description="Seconds between scheduled monitoring passes (0 disables the scheduler)",
        ge=0
    )
    action_channel_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single remedial action channel call",
        gt=0,
        le=120
    )
    escalate_when_all_channels_fail: bool = Field(
        default=True,
        description="Escalate a violation when every configured action channel failed"
    )
    default_rules_path: Path = Field(
        default=Path("config/sla_rules.yaml"),
        description="YAML file with the default SLA rules used for seeding"
    )

    # ========== Email Alerts (SendGrid) ==========
    sendgrid_api_key: Optional[str] = Field(
        default=None,
        description="SendGrid API key; alerts are only logged when unset"
    )
    alert_from_email: str = Field(
        default="sla-alerts@freight.example.com",
        description="Sender address for SLA alert emails"
    )

    # ========== On-chain Reporting ==========
    contract_gateway_url: Optional[str] = Field(
        default=None,
        description="HTTP relay for smart contract calls; calls are simulated when unset"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @property
    def scheduler_enabled(self) -> bool:
        return self.monitoring_interval_seconds > 0


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class RuleType(str):
    """Lifecycle interval measured by an SLA rule."""
    DELIVERY_TIME = "delivery_time"
    PICKUP_TIME = "pickup_time"
    PROCESSING_TIME = "processing_time"
    RESPONSE_TIME = "response_time"


class RulePriority(str):
    """Informational rule priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ShipmentStatus(str):
    """Shipment lifecycle statuses (owned by the shipment module)."""
    CREATED = "created"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ShipmentPriority(str):
    """Shipment service levels referenced by rule conditions."""
    STANDARD = "standard"
    EXPRESS = "express"


class ViolationStatus(str):
    """SLA violation episode statuses."""
    DETECTED = "detected"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ActionType(str):
    """Remedial action channels."""
    EMAIL_ALERT = "email_alert"
    WEBHOOK = "webhook"
    SMART_CONTRACT = "smart_contract"
    PENALTY = "penalty"


# ========== Status groups ==========

OPEN_VIOLATION_STATUSES = [ViolationStatus.DETECTED, ViolationStatus.PROCESSING]
CLOSED_VIOLATION_STATUSES = [ViolationStatus.RESOLVED, ViolationStatus.ESCALATED]

# Shipments in these states can no longer breach anything
TERMINAL_SHIPMENT_STATUSES = [ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED]

# Dispatch order is fixed: alerts, webhook, on-chain, penalty
ACTION_ORDER = [
    ActionType.EMAIL_ALERT, ActionType.WEBHOOK,
    ActionType.SMART_CONTRACT, ActionType.PENALTY
]
