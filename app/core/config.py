"""
Application configuration.
Secrets are optionally loaded from Azure Key Vault at startup (when
KEY_VAULT_NAME is set), then fallen back to environment variables /
.env file so local development works without Key Vault access.
"""
import os
import logging
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key Vault → environment variable mapping
# Secret names in Key Vault use lowercase-dashes; env vars use UPPER_SNAKE.
# ---------------------------------------------------------------------------
_KV_TO_ENV: dict[str, str] = {
    "database-url":              "DATABASE_URL",
    "twilio-account-sid":        "TWILIO_ACCOUNT_SID",
    "twilio-auth-token":         "TWILIO_AUTH_TOKEN",
    "twilio-phone-number":       "TWILIO_PHONE_NUMBER",
    "storage-connection-string": "AZURE_BLOB_CONNECTION_STRING",
    "openai-api-key":            "OPENAI_API_KEY",
    "redis-url":                 "REDIS_URL",
    "vapid-public-key":          "VAPID_PUBLIC_KEY",
    "vapid-private-key":         "VAPID_PRIVATE_KEY",
    "admin-api-token":           "ADMIN_API_TOKEN",
}


def _load_from_key_vault(vault_name: str) -> int:
    """
    Fetch secrets from Azure Key Vault and inject them into os.environ.
    Returns the number of secrets successfully loaded.
    """
    try:
        from azure.identity import DefaultAzureCredential
        from azure.keyvault.secrets import SecretClient
        from azure.core.exceptions import ResourceNotFoundError

        vault_url = f"https://{vault_name}.vault.azure.net/"
        client = SecretClient(vault_url=vault_url, credential=DefaultAzureCredential())
        loaded = 0

        for kv_name, env_name in _KV_TO_ENV.items():
            # Key Vault always wins over env vars / .env.
            try:
                secret = client.get_secret(kv_name)
                if secret.value:
                    os.environ[env_name] = secret.value
                    loaded += 1
            except ResourceNotFoundError:
                pass
            except Exception as e:
                logger.warning("KV: could not load '%s': %s", kv_name, e)

        return loaded

    except ImportError:
        logger.warning("azure-keyvault-secrets / azure-identity not installed; skipping Key Vault load.")
        return 0
    except Exception as e:
        logger.warning("Key Vault load failed (%s); falling back to environment / .env file.", e)
        return 0


_kv_name = os.environ.get("KEY_VAULT_NAME", "")
if _kv_name:
    _n = _load_from_key_vault(_kv_name)
    if _n:
        logger.info("Loaded %d secrets from Key Vault '%s'", _n, _kv_name)


class Settings(BaseSettings):
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "sqlite+aiosqlite:///./delivery_calls.db"
    KEY_VAULT_NAME: str = ""

    # Public base URL the telephony provider calls back into
    BASE_URL: str = ""

    # Twilio
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TELEPHONY_TIMEOUT_SECONDS: float = 10.0

    # Azure Blob media store
    AZURE_BLOB_CONNECTION_STRING: str = ""
    MEDIA_CONTAINER: str = "call-recordings"
    MEDIA_PUBLIC_URL: str = ""
    MEDIA_DOWNLOAD_TIMEOUT_SECONDS: float = 30.0

    # OpenAI transcription + analysis
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    TRANSCRIPTION_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: str = "en"
    ANALYSIS_MODEL: str = "gpt-3.5-turbo"
    TRANSCRIPTION_TIMEOUT_SECONDS: float = 30.0
    ANALYSIS_TIMEOUT_SECONDS: float = 30.0

    # Result cache
    REDIS_URL: str = ""

    # Web push
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_SUBJECT: str = "mailto:dispatch@example.com"
    PUSH_TIMEOUT_SECONDS: float = 5.0

    # Admin endpoints (reprocess, queue stats)
    ADMIN_API_TOKEN: str = ""

    # Job queue
    JOB_LEASE_SECONDS: float = 30.0
    JOB_STALLED_INTERVAL_SECONDS: float = 15.0
    JOB_MAX_STALLED_COUNT: int = 1
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 5.0
    JOB_KEEP_COMPLETED: int = 10
    JOB_KEEP_FAILED: int = 5

    # Hard cap on one external pipeline step (download + provider call)
    PIPELINE_STEP_TIMEOUT_SECONDS: float = 90.0

    # Worker pool
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_CONCURRENCY_INITIATE_CALL: int = 2
    WORKER_CONCURRENCY_PROCESS_RECORDING: int = 10
    WORKER_CONCURRENCY_PROCESS_TRANSCRIPTION: int = 5

    class Config:
        env_file = ".env"


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for the web and worker processes."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
