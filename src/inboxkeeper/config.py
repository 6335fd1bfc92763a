"""Configuration management for inboxkeeper."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class GmailConfig(BaseModel):
    """Gmail REST API configuration."""

    base_url: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    access_token: str = Field(default="", repr=False)
    access_token_env: str = "GMAIL_ACCESS_TOKEN"
    timeout: int = 30
    inbox_query: str = "in:inbox"
    max_results: int = Field(default=50, ge=1, le=500)

    def get_access_token(self) -> str | None:
        """Return the configured token, falling back to the environment."""
        if self.access_token:
            return self.access_token
        return os.environ.get(self.access_token_env) or None


class AccountConfig(BaseModel):
    """One mailbox and the credentials it is read with.

    Without a token of its own the account uses the gmail section's token.
    """

    email: str
    access_token: str = Field(default="", repr=False)
    access_token_env: str | None = None

    @property
    def uses_default_credentials(self) -> bool:
        return not (self.access_token or self.access_token_env)

    def gmail_config(self, default: GmailConfig) -> GmailConfig:
        """The Gmail settings for this account."""
        if self.access_token:
            return default.model_copy(update={"access_token": self.access_token})
        if self.access_token_env:
            return default.model_copy(
                update={"access_token": "", "access_token_env": self.access_token_env}
            )
        return default


class LLMConfig(BaseModel):
    """Language model provider configuration (OpenAI-compatible API)."""

    enabled: bool = True
    base_url: str = "https://api.openai.com/v1"
    models: list[str] = Field(
        default_factory=lambda: ["gpt-3.5-turbo", "gpt-4", "gpt-4-turbo-preview"],
        description="Tried in order; a missing model advances to the next one",
    )
    api_key: str = Field(default="", repr=False)
    api_key_env: str = "OPENAI_API_KEY"
    timeout: int = 30
    temperature: float = 0.1

    def get_api_key(self) -> str | None:
        """Return the API key, or None when no credentials are configured."""
        if self.api_key:
            return self.api_key
        return os.environ.get(self.api_key_env) or None


class ClassifierConfig(BaseModel):
    """Heuristic classifier tuning."""

    personal_contacts: list[str] = Field(
        default_factory=list,
        description="Name or address fragments of people whose mail matters",
    )
    extra_marketing_domains: list[str] = Field(default_factory=list)


class SyncConfig(BaseModel):
    """Delta sync scheduling."""

    interval: float = Field(default=30.0, gt=0, description="Seconds between delta syncs")
    enrich_new: bool = Field(
        default=True, description="Run priority/action analysis on newly arrived mail"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = None
    audit_file: str | None = "audit.jsonl"


class Config(BaseModel):
    """Main configuration."""

    accounts: list[AccountConfig] = Field(default_factory=list)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database_path: str = "inboxkeeper.db"

    @field_validator("accounts", mode="before")
    @classmethod
    def _expand_accounts(cls, value):
        # A bare address is shorthand for an account on the default token
        if isinstance(value, list):
            return [{"email": item} if isinstance(item, str) else item for item in value]
        return value

    @model_validator(mode="after")
    def _check_credentials(self) -> Config:
        shared = [a.email for a in self.accounts if a.uses_default_credentials]
        if len(shared) > 1:
            raise ValueError(
                f"Accounts {', '.join(shared)} would all read the mailbox of the "
                "default Gmail token; give each its own access_token or access_token_env"
            )
        return self

    @property
    def account_emails(self) -> list[str]:
        return [account.email for account in self.accounts]


def load_config(config_path: str | Path) -> Config:
    """Load configuration from YAML file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return Config(**data)
