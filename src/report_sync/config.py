"""
Configuración del servicio de sincronización de reportes Mercado Pago
"""

from pathlib import Path
from typing import Optional, Any
from pydantic import field_validator
from pydantic_settings import BaseSettings
import structlog

PACKAGE_DIR = Path(__file__).resolve().parent
SRC_DIR = PACKAGE_DIR.parent
PROJECT_ROOT = SRC_DIR.parent
ENV_PATH = PROJECT_ROOT / ".env"

SERVICE_LOGGERS = ("app", "report_sync", "mp_webhook", "mp_scheduler")

# Corrida más larga posible: jitter + sondeo de 10 min por categoría + descargas
MIN_LOCK_TTL_SECONDS = 25 * 60


class Settings(BaseSettings):
    """Configuración de la aplicación"""

    # Application Configuration
    app_env: str = "development"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # Database Configuration
    database_url: Optional[str] = None
    db_host: Optional[str] = None
    db_port: int = 3306
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    db_name: Optional[str] = None

    # Mercado Pago API
    mp_access_token: Optional[str] = None
    mp_api_base_url: str = "https://api.mercadopago.com"
    mp_timeout_seconds: int = 30
    mp_user_id: Optional[str] = None
    mp_report_id_column: str = "SOURCE_ID"

    # Motor de sincronización
    mp_timezone: str = "America/Santiago"
    mp_sync_scheduler_enabled: bool = True
    mp_sync_peak_interval_seconds: int = 20 * 60
    mp_sync_offpeak_interval_seconds: int = 3 * 60 * 60
    mp_sync_peak_start_hour: int = 8
    mp_sync_peak_end_hour: int = 21
    mp_sync_max_jitter_seconds: float = 45.0
    mp_sync_max_files_per_run: int = 4
    mp_webhook_debounce_seconds: float = 5.0

    # Lock distribuido
    lock_provider: str = "database"
    mp_sync_lock_key: int = 724_001
    redis_url: Optional[str] = None
    lock_ttl_seconds: int = 60 * 60

    # Logging
    log_file_path: str = str(PROJECT_ROOT / "logs" / "report_sync.log")
    log_backup_count: int = 30  # Equivalente a 30 días de retención cuando se rota diariamente

    class Config:
        env_file = str(ENV_PATH)
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignorar campos extra del .env

    @field_validator('log_level')
    def validate_log_level(cls, v: str) -> str:
        """Validar nivel de logging"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('app_env')
    def validate_app_env(cls, v: str) -> str:
        """Validar entorno de aplicación"""
        valid_envs = ['development', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f'App env must be one of: {valid_envs}')
        return v.lower()

    @field_validator('lock_provider')
    def validate_lock_provider(cls, v: str) -> str:
        valid_providers = ['database', 'redis', 'memory']
        if v.lower() not in valid_providers:
            raise ValueError(f'Lock provider must be one of: {valid_providers}')
        return v.lower()

    @field_validator('lock_ttl_seconds')
    def validate_lock_ttl(cls, v: int) -> int:
        if v < MIN_LOCK_TTL_SECONDS:
            raise ValueError(f'Lock TTL must be at least {MIN_LOCK_TTL_SECONDS} seconds')
        return v

    @field_validator('mp_sync_peak_start_hour', 'mp_sync_peak_end_hour')
    def validate_peak_hour(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError('Peak window hours must be between 0 and 24')
        return v

    def model_post_init(self, __context: Any) -> None:  # noqa: D401
        """Normaliza rutas relativas después de cargar el .env."""
        value = self.log_file_path
        if value:
            path = Path(value)
            if not path.is_absolute():
                path = PROJECT_ROOT / path
            object.__setattr__(self, "log_file_path", str(path))

    def resolved_database_url(self) -> Optional[str]:
        """URL de conexión SQLAlchemy, construida desde partes si no hay DATABASE_URL."""
        url = self.database_url
        if url:
            if url.startswith("mysql://"):
                url = url.replace("mysql://", "mysql+pymysql://", 1)
            return url
        if not self.db_host:
            return None
        return (
            f"mysql+pymysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


def get_settings() -> Settings:
    """Obtener configuración de la aplicación"""
    return Settings()


def configure_logging(settings: Settings):
    """Configurar logging estructurado con separación por servicio."""
    import logging.config

    log_path = Path(settings.log_file_path)
    log_dir = log_path.parent
    log_dir.mkdir(parents=True, exist_ok=True)

    service_log_paths = {
        "app": log_dir / "application.log",
        "report_sync": log_path,
        "mp_webhook": log_dir / "mp_webhook.log",
        "mp_scheduler": log_dir / "mp_scheduler.log",
    }

    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp_utc"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter_name = "structlog_json"
    foreign_pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", key="timestamp_utc"),
    ]

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter_name,
            "stream": "ext://sys.stdout",
        },
    }
    filters = {}
    loggers = {}
    for name in SERVICE_LOGGERS:
        filters[f"{name}_filter"] = {"()": "logging.Filter", "name": name}
        handlers[f"{name}_file"] = {
            "class": "logging.handlers.TimedRotatingFileHandler",
            "formatter": formatter_name,
            "filename": str(service_log_paths[name]),
            "when": "midnight",
            "backupCount": settings.log_backup_count,
            "encoding": "utf-8",
            "utc": True,
            "filters": [f"{name}_filter"],
        }
        loggers[name] = {
            "handlers": [f"{name}_file"],
            "level": settings.log_level,
            "propagate": True,
        }

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            formatter_name: {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.processors.JSONRenderer(),
                "foreign_pre_chain": foreign_pre_chain,
            },
        },
        "filters": filters,
        "handlers": handlers,
        "loggers": loggers,
        "root": {
            "handlers": ["console"],
            "level": settings.log_level,
        },
    }

    logging.config.dictConfig(log_config)
