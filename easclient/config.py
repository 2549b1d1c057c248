"""
Configuration module for the EAS client
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Client settings loaded from environment variables"""

    # Account
    HOST = os.getenv("EAS_HOST", "")
    USER = os.getenv("EAS_USER", "")
    PASSWORD = os.getenv("EAS_PASSWORD", "")
    EMAIL_ADDRESS = os.getenv("EAS_EMAIL_ADDRESS", "")
    DEVICE_ID = os.getenv("EAS_DEVICE_ID", "")
    DEVICE_TYPE = os.getenv("EAS_DEVICE_TYPE", "Android")
    USE_SSL = _bool("EAS_USE_SSL", "true")
    TRUST_ALL_CERTS = _bool("EAS_TRUST_ALL_CERTS", "false")

    # Protocol; 2.5 until OPTIONS tells us otherwise
    PROTOCOL_VERSION = os.getenv("EAS_PROTOCOL_VERSION", "2.5")
    CLIENT_VERSION = os.getenv("EAS_CLIENT_VERSION", "0.3")

    # Timeouts (seconds)
    CONNECT_TIMEOUT = int(os.getenv("EAS_CONNECT_TIMEOUT", "10"))
    COMMAND_TIMEOUT = int(os.getenv("EAS_COMMAND_TIMEOUT", "30"))
    PING_COMMAND_TIMEOUT = int(os.getenv("EAS_PING_COMMAND_TIMEOUT", str(20 * 60)))
    SEND_MAIL_TIMEOUT = int(os.getenv("EAS_SEND_MAIL_TIMEOUT", str(15 * 60)))

    # Push
    PING_HEARTBEAT = int(os.getenv("EAS_PING_HEARTBEAT", "900"))
    PING_WAIT_MARGIN = int(os.getenv("EAS_PING_WAIT_MARGIN", "60"))

    # Sync
    EMAIL_WINDOW_SIZE = int(os.getenv("EAS_EMAIL_WINDOW_SIZE", "10"))
    PIM_WINDOW_SIZE = int(os.getenv("EAS_PIM_WINDOW_SIZE", "20"))
    LOOKBACK = os.getenv("EAS_LOOKBACK", "1week")
    TRUNCATION_SIZE = int(os.getenv("EAS_TRUNCATION_SIZE", "200000"))

    # Storage
    DATABASE_URL = os.getenv("EAS_DATABASE_URL", "sqlite:///./eas_client.db")
    ATTACHMENT_DIR = os.getenv("EAS_ATTACHMENT_DIR", "./attachments")
    CACHE_DIR = os.getenv("EAS_CACHE_DIR") or None

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    REDACT = _bool("EAS_REDACT", "true")

    @property
    def ping_wait_timeout(self) -> int:
        """Foreground wait while a Ping is outstanding; always longer than the heartbeat."""
        return self.PING_HEARTBEAT + self.PING_WAIT_MARGIN

    def validate(self):
        if not self.HOST:
            raise ValueError("EAS_HOST is not set")
        if self.PING_WAIT_MARGIN <= 0:
            raise ValueError("EAS_PING_WAIT_MARGIN must be positive")


# Global settings instance
settings = Settings()
