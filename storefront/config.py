"""
Configuration management for the storefront cart service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront-cart")
    REGION: str = os.getenv("REGION", "ap-south-1")

    # Backend API settings
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:5000")
    API_TOKEN: Optional[str] = os.getenv("API_TOKEN")
    API_TIMEOUT_SECONDS: float = float(os.getenv("API_TIMEOUT_SECONDS", "15"))

    # Storage settings
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "redis")  # "redis" or "memory"

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USE_SSL: bool = _get_bool("REDIS_USE_SSL", "false")

    # Cart settings
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(7 * 24 * 60 * 60)))  # 7 days default
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "50"))
    SANITIZE_BATCH_SIZE: int = int(os.getenv("SANITIZE_BATCH_SIZE", "10"))

    # Pricing policy
    SHIPPING_BUFFER: Decimal = Decimal(os.getenv("SHIPPING_BUFFER", "79"))
    CURRENCY: str = os.getenv("CURRENCY", "INR")
    CURRENCY_SYMBOL: str = "₹"

    # Shipping estimate
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "1499"))
    LONG_DISTANCE_SHIPPING_FEE: Decimal = Decimal(os.getenv("LONG_DISTANCE_SHIPPING_FEE", "60"))

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    @classmethod
    def _read_secret(cls, secret_name: str) -> dict:
        client = boto3.client("secretsmanager", region_name=cls.REGION)
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response["SecretString"])

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, use no auth

        try:
            secret_data = cls._read_secret(secret_name)
            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")

    @classmethod
    def load_api_secrets(cls) -> None:
        """Load the backend API token from AWS Secrets Manager"""
        if cls.API_TOKEN:
            return

        secret_name = os.getenv("API_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._read_secret(secret_name)
            cls.API_TOKEN = secret_data.get("api_token")
            if "base_url" in secret_data:
                cls.API_BASE_URL = secret_data["base_url"]
        except Exception as e:
            logger.warning(f"Could not load API secrets from Secrets Manager: {e}")


# Load secrets at module import
Config.load_redis_secrets()
Config.load_api_secrets()
