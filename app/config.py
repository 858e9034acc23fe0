import warnings
from typing import List, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Known insecure default tokens (must never be used in production) ──
_INSECURE_TOKENS = {
    "",
    "change_this",
    "secret",
}


class Settings(BaseSettings):
    APP_NAME: str = "VM Orchestrator"
    APP_ENV: str = "development"
    API_V1_STR: str = "/api/v1"
    PUBLIC_BASE_URL: str = "http://localhost:8000"  # VMs call back here

    # CORS
    BACKEND_CORS_ORIGINS: str = ""

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "vmorch"
    SQLALCHEMY_DATABASE_URI: Optional[str] = None  # overrides POSTGRES_* (e.g. sqlite://)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    DB_ECHO: bool = False

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_ALWAYS_EAGER: bool = False
    HEALTH_SWEEP_INTERVAL_SECONDS: int = 0  # 0 = no beat entry, rely on external cron

    # DNS provider (Cloudflare)
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_API_BASE: str = "https://api.cloudflare.com/client/v4"
    VM_BASE_DOMAIN: str = "alfredos.site"
    DNS_RECORD_TTL: int = 300              # short TTL, fast propagation after provisioning

    # Compute provider (Hetzner Cloud)
    HETZNER_API_KEY: str = ""
    HETZNER_API_BASE: str = "https://api.hetzner.cloud/v1"
    HETZNER_LOCATION: str = "nbg1"
    HETZNER_SERVER_TYPE: str = "cx22"      # 2 vCPU, 4GB RAM
    HETZNER_IMAGE: str = "ubuntu-24.04"
    HETZNER_SSH_KEYS: str = ""             # comma-separated names or ids
    HETZNER_TIMEOUT: float = 30.0

    # VM agent stack written by cloud-init
    VM_AGENT_IMAGE: str = "ghcr.io/alfred/async-agent:latest"

    # Provisioning
    PROVISION_SYNC_TIMEOUT_SECONDS: float = 55.0  # calling HTTP request has its own timeout
    SUBDOMAIN_MAX_ATTEMPTS: int = 100
    SUBDOMAIN_RESERVE_ATTEMPTS: int = 5

    # Registration handshake
    REGISTRATION_ALLOW_UNHASHED: bool = False  # legacy: hash whatever arrives first

    # Health monitoring
    VM_SCHEME: str = "https"
    VM_HEALTH_PATH: str = "/health"
    VM_HEALTH_CHECK_TIMEOUT: float = 10.0
    VM_HEALTH_MAX_FAILURES: int = 3
    HEALTH_SWEEP_CONCURRENCY: int = 8

    # Privileged access
    ADMIN_API_TOKEN: str = ""
    CRON_SECRET: str = ""
    ORCHESTRATOR_SERVICE_TOKEN: str = ""

    # Admin API Network Isolation
    ADMIN_IP_WHITELIST_ENABLED: bool = False   # Enable in production
    ADMIN_IP_WHITELIST: str = "127.0.0.1,::1,10.0.0.0/8,172.16.0.0/12,192.168.0.0/16"
    ADMIN_TRUSTED_PROXY_IPS: str = "127.0.0.1,::1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Block startup if critical secrets are insecure in production / staging."""
        if self.APP_ENV in ("production", "staging"):
            # ── Admin token ──
            if self.ADMIN_API_TOKEN in _INSECURE_TOKENS or len(self.ADMIN_API_TOKEN) < 32:
                raise ValueError(
                    "ADMIN_API_TOKEN is missing or too short. "
                    "Set a strong random token (≥ 32 chars) in .env or environment."
                )
            # ── Database password ──
            if not self.SQLALCHEMY_DATABASE_URI and self.POSTGRES_PASSWORD in ("postgres", ""):
                raise ValueError(
                    "POSTGRES_PASSWORD is set to default 'postgres'. "
                    "Set a strong password in .env or environment."
                )
            if not self.CRON_SECRET:
                warnings.warn(
                    "CRON_SECRET is not set; the health sweep endpoint is unprotected.",
                    UserWarning,
                    stacklevel=2,
                )
        return self

    @property
    def database_url(self) -> str:
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"
        )

    @property
    def hetzner_ssh_keys(self) -> List[str]:
        return [k.strip() for k in self.HETZNER_SSH_KEYS.split(",") if k.strip()]

    @property
    def registration_url(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}{self.API_V1_STR}/vm/register"

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_staging(self) -> bool:
        return self.APP_ENV == "staging"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

    def missing_credentials(self) -> List[str]:
        """Names of provider credentials that are not configured."""
        missing = []
        if not self.CLOUDFLARE_API_TOKEN:
            missing.append("CLOUDFLARE_API_TOKEN")
        if not self.HETZNER_API_KEY:
            missing.append("HETZNER_API_KEY")
        return missing

settings = Settings()
