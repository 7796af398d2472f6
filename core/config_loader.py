import yaml
import os
from typing import List, Optional, Dict, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


class OperationLimitConfig(BaseModel):
    """Base quota for one operation type."""
    max_requests: int = Field(ge=0)
    window_seconds: float = Field(default=60.0, gt=0)


def _default_operation_limits() -> Dict[str, OperationLimitConfig]:
    return {
        'notification_send': OperationLimitConfig(max_requests=100, window_seconds=60),
        'bulk_notification': OperationLimitConfig(max_requests=5, window_seconds=60),
        'system_announcement': OperationLimitConfig(max_requests=10, window_seconds=300),
        'preferences_update': OperationLimitConfig(max_requests=20, window_seconds=60),
        'token_registration': OperationLimitConfig(max_requests=10, window_seconds=60),
        'notification_read': OperationLimitConfig(max_requests=200, window_seconds=60),
    }


class RateLimitConfig(BaseModel):
    """
    Configuration for the sliding-window rate limiter.

    When redis_url is unset the limiter uses the in-process quota store,
    which is only correct for single-instance deployments.
    """
    enabled: bool = True
    redis_url: Optional[str] = None
    key_prefix: str = "rate_limit"

    limits: Dict[str, OperationLimitConfig] = Field(default_factory=_default_operation_limits)
    role_multipliers: Dict[str, float] = Field(default_factory=lambda: {
        'admin': 5.0,
        'manager': 2.0,
        'user': 1.0,
    })

    # Bypass rules, evaluated in order after the internal-caller flag
    bypass_priorities: List[str] = Field(default_factory=lambda: ['emergency', 'critical'])
    bypass_roles: List[str] = Field(default_factory=list)
    bypass_ips: List[str] = Field(default_factory=list)

    @field_validator('role_multipliers')
    @classmethod
    def _positive_multipliers(cls, value: Dict[str, float]) -> Dict[str, float]:
        for role, multiplier in value.items():
            if multiplier <= 0:
                raise ValueError(f"Role multiplier for '{role}' must be positive")
        return value


class SinkConfig(BaseModel):
    """Timeout, circuit-breaker and retry parameters for one delivery sink."""
    timeout_seconds: float = Field(default=10.0, gt=0)
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    half_open_max_calls: int = Field(default=1, ge=1)

    # Retry policy applied inside a single send
    max_attempts: int = Field(default=3, ge=1)
    backoff_initial_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)

    @property
    def attempt_timeout_seconds(self) -> float:
        """Socket timeout for one attempt; all attempts together fit in timeout_seconds."""
        return self.timeout_seconds / self.max_attempts


def _default_sinks() -> Dict[str, SinkConfig]:
    return {
        'email': SinkConfig(timeout_seconds=15.0),
        'push': SinkConfig(timeout_seconds=10.0),
        'chat': SinkConfig(timeout_seconds=5.0),
        'in_app': SinkConfig(timeout_seconds=5.0, max_attempts=1),
        'websocket': SinkConfig(timeout_seconds=5.0, max_attempts=1),
    }


class EmailConfig(BaseModel):
    """SMTP settings. Normally supplied through SMTP_* environment variables."""
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: str = "noreply@notifier.local"
    use_tls: bool = True


class DeliveryConfig(BaseModel):
    """Where each channel goes and how each sink behaves."""
    sinks: Dict[str, SinkConfig] = Field(default_factory=_default_sinks)

    # Logical channel -> sink name (several channels may share a sink)
    channel_sinks: Dict[str, str] = Field(default_factory=lambda: {
        'in_app': 'in_app',
        'websocket': 'websocket',
        'email': 'email',
        'push': 'push',
        'chat': 'chat',
    })

    email: EmailConfig = Field(default_factory=EmailConfig)
    push_gateway_url: Optional[str] = None
    push_api_key: Optional[str] = None

    # Worker pools (max_workers is per sink)
    max_workers: int = Field(default=16, ge=1)
    dispatch_workers: int = Field(default=8, ge=1)

    def sink_config(self, sink_name: str) -> SinkConfig:
        return self.sinks.get(sink_name) or SinkConfig()

    def known_sinks(self) -> List[str]:
        """Configured sinks plus every sink a channel routes to, in config order."""
        names = list(self.sinks)
        for sink_name in self.channel_sinks.values():
            if sink_name not in names:
                names.append(sink_name)
        return names


class PriorityConfig(BaseModel):
    """
    Scoring tables and thresholds for the PriorityEngine and ChannelSelector.
    """
    base_scores: Dict[str, int] = Field(default_factory=lambda: {
        'low': 20,
        'medium': 50,
        'high': 75,
        'urgent': 90,
        'critical': 100,
    })
    type_adjustments: Dict[str, int] = Field(default_factory=lambda: {
        'security_alert': 20,
        'system_announcement': 10,
        'task_assigned': 5,
        'task_overdue': 15,
        'task_escalated': 25,
        'workflow_failed': 10,
        'deadline_reminder': 10,
        'approval_request': 15,
    })
    direct_assignment_bonus: int = 10
    manager_team_bonus: int = 5
    recent_activity_bonus: int = 5
    recent_activity_seconds: int = 3600

    # Hours in the recipient's timezone, inclusive
    business_hours: Tuple[int, int] = (9, 17)
    business_hours_bonus: int = 5
    night_start_hour: int = 22
    night_end_hour: int = 6
    night_penalty: int = 10

    # Channel selector thresholds
    high_threshold: int = Field(default=75, ge=0, le=100)
    low_threshold: int = Field(default=20, ge=0, le=100)

    # Types that are never suppressed by quiet hours
    urgent_types: List[str] = Field(default_factory=lambda: [
        'security_alert',
        'system_critical',
        'task_escalated',
        'approval_urgent',
        'deadline_critical',
    ])
    quiet_hours_channels: List[str] = Field(default_factory=lambda: ['push', 'email'])

    @model_validator(mode='after')
    def _check_thresholds(self) -> 'PriorityConfig':
        if self.low_threshold >= self.high_threshold:
            raise ValueError("low_threshold must be below high_threshold")
        if any(c in ('in_app', 'websocket') for c in self.quiet_hours_channels):
            raise ValueError("in_app and websocket cannot be suppressed by quiet hours")
        return self


class DedupConfig(BaseModel):
    """Burst collapsing settings."""
    enabled: bool = True
    window_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)


class AdminApiConfig(BaseModel):
    """Operational HTTP API."""
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8090


class AppConfig(BaseModel):
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    priority: PriorityConfig = Field(default_factory=PriorityConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    admin_api: AdminApiConfig = Field(default_factory=AdminApiConfig)


def _apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables on the parsed YAML."""
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data.setdefault('rate_limits', {})
        data['rate_limits']['redis_url'] = env_redis_url

    env_bypass_ips = os.environ.get("RATE_LIMIT_BYPASS_IPS")
    if env_bypass_ips:
        data.setdefault('rate_limits', {})
        data['rate_limits']['bypass_ips'] = [ip.strip() for ip in env_bypass_ips.split(',') if ip.strip()]

    env_push_url = os.environ.get("PUSH_GATEWAY_URL")
    if env_push_url:
        data.setdefault('delivery', {})
        data['delivery']['push_gateway_url'] = env_push_url

    smtp_env = {
        'smtp_server': "SMTP_SERVER",
        'smtp_port': "SMTP_PORT",
        'username': "SMTP_USERNAME",
        'password': "SMTP_PASSWORD",
        'from_email': "FROM_EMAIL",
    }
    for field_name, env_name in smtp_env.items():
        value = os.environ.get(env_name)
        if value:
            data.setdefault('delivery', {})
            data['delivery'].setdefault('email', {})
            data['delivery']['email'][field_name] = value

    return data


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the project root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    data = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    return AppConfig(**_apply_env_overrides(data))
