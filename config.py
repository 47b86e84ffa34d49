"""
Configuration module for the light bridge
Handles environment variables with proper formatting using python-decouple
"""

import secrets
from typing import Dict, List, Optional

from decouple import config, Csv


class Settings:
    """Application settings loaded from environment variables"""

    # MQTT Broker
    MQTT_HOST               : str = config("MQTT_HOST", default="broker.emqx.io")
    MQTT_PORT               : int = config("MQTT_PORT", default=1883, cast=int)
    MQTT_USERNAME           : Optional[str] = config("MQTT_USERNAME", default=None)
    MQTT_PASSWORD           : Optional[str] = config("MQTT_PASSWORD", default=None)
    MQTT_USE_SSL            : bool = config("MQTT_USE_SSL", default=False, cast=bool)
    MQTT_CLIENT_ID          : str = config(
        "MQTT_CLIENT_ID"
        , default=f"fastapi_{secrets.token_hex(3)}"
    )

    # MQTT Connection lifecycle
    MQTT_KEEPALIVE          : int = config("MQTT_KEEPALIVE", default=60, cast=int)
    MQTT_CONNECT_TIMEOUT    : float = config("MQTT_CONNECT_TIMEOUT", default=30, cast=float)
    MQTT_RECONNECT_PERIOD   : int = config("MQTT_RECONNECT_PERIOD", default=5, cast=int)
    MQTT_COMMAND_QOS        : int = config("MQTT_COMMAND_QOS", default=0, cast=int)
    MQTT_ACK_QOS            : int = config("MQTT_ACK_QOS", default=0, cast=int)

    # MQTT Topics
    MQTT_TOPIC_COMMAND      : str = config("MQTT_TOPIC_COMMAND", default="casa/foco/comando")
    MQTT_TOPIC_STATE        : str = config("MQTT_TOPIC_STATE", default="casa/foco/estado")
    MQTT_TOPIC_HEARTBEAT    : str = config("MQTT_TOPIC_HEARTBEAT", default="casa/foco/heartbeat")
    MQTT_TOPIC_STATUS       : str = config("MQTT_TOPIC_STATUS", default="casa/foco/status")
    SERVER_NAME             : str = config("SERVER_NAME", default="fastapi")

    # Liveness
    DEVICE_HEARTBEAT_WINDOW_SECONDS : int = config(
        "DEVICE_HEARTBEAT_WINDOW_SECONDS"
        , default=300
        , cast=int
    )
    LIVENESS_SWEEP_INTERVAL_SECONDS : int = config(
        "LIVENESS_SWEEP_INTERVAL_SECONDS"
        , default=60
        , cast=int
    )

    # Application Settings
    APP_HOST                : str = config("APP_HOST", default="0.0.0.0")
    APP_PORT                : int = config("APP_PORT", default=3000, cast=int)
    APP_RELOAD              : bool = config("APP_RELOAD", default=False, cast=bool)
    CORS_ORIGINS            : List[str] = config("CORS_ORIGINS", default="*", cast=Csv())

    # Logging Configuration
    LOG_LEVEL               : str = config("LOG_LEVEL", default="INFO")
    LOG_DIR                 : str = config("LOG_DIR", default="logs")
    LOG_FILE_MAX_BYTES      : int = config("LOG_FILE_MAX_BYTES", default=10 * 1024 * 1024, cast=int)
    LOG_FILE_BACKUPS        : int = config("LOG_FILE_BACKUPS", default=5, cast=int)
    LOG_COLOR               : bool = config("LOG_COLOR", default=True, cast=bool)

    def use_tls(self) -> bool:
        """TLS is on when requested explicitly or when the broker listens on 8883"""
        return self.MQTT_USE_SSL or self.MQTT_PORT == 8883

    def broker_address(self) -> str:
        return f"{self.MQTT_HOST}:{self.MQTT_PORT}"

    def get_topics(self) -> Dict[str, str]:
        return {
            "command"       : self.MQTT_TOPIC_COMMAND,
            "state_report"  : self.MQTT_TOPIC_STATE,
            "heartbeat"     : self.MQTT_TOPIC_HEARTBEAT,
            "status_ack"    : self.MQTT_TOPIC_STATUS,
        }

    @classmethod
    def validate_required_settings(cls) -> bool:
        """
        Validate the settings the bridge cannot run without
        Returns True if all settings are valid
        """
        problems = []

        if not cls.MQTT_HOST:
            problems.append("MQTT_HOST must not be empty")

        for name in ("MQTT_COMMAND_QOS", "MQTT_ACK_QOS"):
            if getattr(cls, name) not in (0, 1):
                problems.append(f"{name} must be 0 or 1")

        for name in (
            "MQTT_CONNECT_TIMEOUT"
            , "MQTT_RECONNECT_PERIOD"
            , "DEVICE_HEARTBEAT_WINDOW_SECONDS"
        ):
            if getattr(cls, name) <= 0:
                problems.append(f"{name} must be positive")

        if problems:
            raise ValueError(f"Invalid configuration: {'; '.join(problems)}")

        return True


# Global settings instance
settings = Settings()
