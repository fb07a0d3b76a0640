from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Local SQLite file holding the business tables plus the cloud sync
    # connection/job ledger tables. The desktop shell usually sets this.
    DATABASE_PATH: str = os.path.join(os.getcwd(), "paintpulse.db")

    # Secret used to encrypt remote connection strings at rest. When missing,
    # a fixed fallback key is used (see cloudsync.utils.crypto).
    CLOUD_SYNC_ENCRYPTION_KEY: Optional[str] = None

    # Rows per batch for export/import. Batches always run in order.
    CLOUD_SYNC_BATCH_SIZE: int = 100

    # Remote statement timeouts (milliseconds). Import reads whole tables and
    # gets a longer budget than export/verify.
    CLOUD_SYNC_EXPORT_STATEMENT_TIMEOUT_MS: int = 60000
    CLOUD_SYNC_IMPORT_STATEMENT_TIMEOUT_MS: int = 120000
    CLOUD_SYNC_CONNECT_TIMEOUT_SECONDS: int = 10

    # Pause between jobs when draining the queue.
    CLOUD_SYNC_JOB_DELAY_SECONDS: float = 0.1

    # Background loop settings.
    CLOUD_SYNC_WORKER_ENABLED: bool = True
    CLOUD_SYNC_WORKER_INTERVAL_SECONDS: int = 30
    CLOUD_SYNC_JOB_RETENTION_DAYS: int = 30

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def database_path(self) -> str:
        return os.path.abspath(self.DATABASE_PATH)


settings = Settings()
