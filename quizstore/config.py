import os
from typing import Dict, List, Literal, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from quizstore.types import IsolationLevel

# Load variables from a .env file at the project root if there is one
load_dotenv(override=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
JSON_LOGS = os.getenv("JSON_LOGS", "0") in {"1", "true", "TRUE", "yes"}
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

DEFAULT_MAX_WAIT_MS = 2000
DEFAULT_TIMEOUT_MS = 5000

LogLevel = Literal["query", "info", "warn", "error"]
ErrorFormat = Literal["pretty", "colorless", "minimal"]


class Datasource(BaseModel):
    url: Optional[str] = None


class LogDefinition(BaseModel):
    level: LogLevel
    emit: Literal["stdout", "event"] = "stdout"


class TransactionOptions(BaseModel):
    max_wait: int = Field(DEFAULT_MAX_WAIT_MS, ge=0)
    timeout: int = Field(DEFAULT_TIMEOUT_MS, ge=0)
    isolation_level: Optional[IsolationLevel] = None

    def merged(self, **overrides) -> "TransactionOptions":
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return TransactionOptions(**values)


class ClientOptions(BaseModel):
    """Options accepted by ``Client(...)``."""

    datasources: Optional[Dict[str, Datasource]] = None
    datasource_url: Optional[str] = None
    error_format: ErrorFormat = "colorless"
    log: List[Union[LogLevel, LogDefinition]] = Field(default_factory=list)
    transaction_options: TransactionOptions = Field(default_factory=TransactionOptions)
    omit: Dict[str, Dict[str, bool]] = Field(default_factory=dict)

    @field_validator("datasources")
    @classmethod
    def _only_db_datasource(cls, value):
        if value is not None and set(value) - {"db"}:
            raise ValueError(f"Unknown datasource(s): {sorted(set(value) - {'db'})}. Only 'db' is defined")
        return value

    @model_validator(mode="after")
    def _single_url_source(self):
        if self.datasources and self.datasource_url:
            raise ValueError("'datasources' and 'datasource_url' cannot be used together")
        return self

    @property
    def url_override(self) -> Optional[str]:
        if self.datasources and "db" in self.datasources:
            return self.datasources["db"].url
        return self.datasource_url

    def log_definitions(self) -> List[LogDefinition]:
        return [LogDefinition(level=item) if isinstance(item, str) else item for item in self.log]
