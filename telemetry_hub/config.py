"""
Configuration management for Telemetry Hub.

Uses Pydantic settings for validation and environment variable support.
"""
import socket
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """Redis configuration for the message backbone."""

    model_config = SettingsConfigDict(
        env_prefix='REDIS_',
        env_file='.env',
        extra='ignore'
    )

    host: str = Field(default='localhost', description='Redis host')
    port: int = Field(default=6379, description='Redis port')
    db: int = Field(default=0, description='Redis database number')
    password: Optional[str] = Field(default=None, description='Redis password')
    ssl: bool = Field(default=False, description='Use SSL connection')
    socket_timeout: float = Field(default=10.0, description='Socket timeout in seconds')

    @property
    def url(self) -> str:
        """Build Redis URL."""
        scheme = 'rediss' if self.ssl else 'redis'
        auth = f":{self.password}@" if self.password else ''
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"


class BackboneSettings(BaseSettings):
    """Publish/subscribe backbone configuration."""

    model_config = SettingsConfigDict(
        env_prefix='BACKBONE_',
        env_file='.env',
        extra='ignore'
    )

    key_prefix: str = Field(default='backbone', description='Prefix for all backbone keys')
    client_id: str = Field(default='telemetry-hub', description='Producer client id')
    consumer_name: str = Field(
        default_factory=socket.gethostname,
        description='Stable consumer name; pending messages are replayed under it after restart'
    )
    member_index: int = Field(default=0, description='Index of this instance within each consumer group')
    member_count: int = Field(default=1, description='Number of instances sharing each consumer group')

    # Consumption
    block_ms: int = Field(default=1000, description='XREADGROUP block time in milliseconds')
    batch_size: int = Field(default=10, description='Messages fetched per read')
    queue_size: int = Field(default=100, description='Bounded channel size per partition')

    # Production
    dedup_ttl_seconds: int = Field(default=3600, description='Producer deduplication window')
    publish_retries: int = Field(default=5, description='Transient publish retry budget')
    publish_retry_delay: float = Field(default=0.1, description='Initial publish retry delay in seconds')
    publish_max_retry_delay: float = Field(default=2.0, description='Maximum publish retry delay')
    stream_max_len: Optional[int] = Field(default=1000000, description='Approximate max entries per partition')

    provision_on_start: bool = Field(default=True, description='Provision the default topic set on start')


class DatabaseSettings(BaseSettings):
    """Database configuration for command persistence."""

    model_config = SettingsConfigDict(
        env_prefix='DATABASE_',
        env_file='.env',
        extra='ignore'
    )

    host: str = Field(default='localhost', description='Database host')
    port: int = Field(default=5432, description='Database port')
    name: str = Field(default='telemetry_hub', description='Database name')
    user: str = Field(default='postgres', description='Database user')
    password: str = Field(default='postgres', description='Database password')
    pool_size: int = Field(default=10, description='Connection pool size')
    max_overflow: int = Field(default=20, description='Max overflow connections')
    echo_sql: bool = Field(default=False, description='Echo SQL queries')

    @property
    def url(self) -> str:
        """Build database URL."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class ModbusSettings(BaseSettings):
    """Register-polling adapter configuration."""

    model_config = SettingsConfigDict(
        env_prefix='MODBUS_',
        env_file='.env',
        extra='ignore'
    )

    enabled: bool = Field(default=False)
    devices_file: Optional[Path] = Field(default=None, description='YAML or JSON file with device descriptors')
    devices: Optional[str] = Field(default=None, description='Inline JSON array of device descriptors')
    connect_retries: int = Field(default=3, description='Connection attempts per device on start')
    connect_retry_delay: float = Field(default=1.0, description='Initial delay between connection attempts')
    connect_max_retry_delay: float = Field(default=10.0, description='Maximum delay between attempts')


class MQTTSettings(BaseSettings):
    """MQTT adapter configuration."""

    model_config = SettingsConfigDict(
        env_prefix='MQTT_',
        env_file='.env',
        extra='ignore'
    )

    enabled: bool = Field(default=False)
    broker_host: str = Field(default='localhost')
    broker_port: int = Field(default=1883)
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    client_id: Optional[str] = Field(default=None, description='Generated when not set')
    keepalive: int = Field(default=60)
    qos: int = Field(default=1)
    connect_timeout: float = Field(default=10.0, description='Seconds to wait for CONNACK')
    connect_retries: int = Field(default=3)
    connect_retry_delay: float = Field(default=1.0)
    topics: List[str] = Field(
        default=[
            'v1/devices/me/telemetry',
            'v1/devices/telemetry',
            'telemetry',
            'devices/+/telemetry',
            'devices/+/data',
            'sensors/+/data',
            'lorawan/+/uplink',
            'milesight/+/data',
        ],
        description='Telemetry topic subscriptions'
    )
    custom_topics: List[str] = Field(default_factory=list, description='Extra subscriptions')
    command_topic_template: str = Field(default='devices/{device_id}/commands')
    default_tenant_id: Optional[str] = Field(default=None)


class CommandSettings(BaseSettings):
    """Command dispatch configuration."""

    model_config = SettingsConfigDict(
        env_prefix='COMMANDS_',
        env_file='.env',
        extra='ignore'
    )

    topic: str = Field(default='device.commands')
    retry_topic: str = Field(default='device.commands.retry')
    consumer_group: str = Field(default='device-commands-consumer-group')
    default_timeout_ms: int = Field(default=30000)
    default_retries: int = Field(default=3)
    partition_by_device: bool = Field(
        default=True,
        description='Key command messages by device id so per-device order is kept'
    )
    quota_resource: str = Field(default='device_commands')
    alarm_topic: str = Field(default='alarms.created', description='Failed URGENT commands raise an alarm here')
    redelivery_attempts: int = Field(
        default=3,
        description='In-process attempts per envelope before it is left pending'
    )
    redelivery_backoff: float = Field(default=0.5)


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'
    )

    app_name: str = Field(default='Telemetry Hub')
    app_version: str = Field(default='0.1.0')
    environment: str = Field(default='development')
    log_level: str = Field(default='INFO')
    telemetry_topic: str = Field(default='telemetry.device.raw')

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    backbone: BackboneSettings = Field(default_factory=BackboneSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    modbus: ModbusSettings = Field(default_factory=ModbusSettings)
    mqtt: MQTTSettings = Field(default_factory=MQTTSettings)
    commands: CommandSettings = Field(default_factory=CommandSettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == 'production'


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings.

    Uses LRU cache to avoid re-reading environment variables on every access.
    """
    return AppSettings()
