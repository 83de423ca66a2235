"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the GitHub App credentials,
the webhook secret, the target repository, the AI agent endpoint and the
workflow knobs (fix budget, approval reaction, maintainer to escalate to).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_autopilot.exceptions import ConfigurationError


class GitHubAppConfig(BaseModel):
    """GitHub App used to act on the repository.

    The private key can be given inline (``private_key``) or as a path to a
    PEM file (``private_key_path``); exactly one of them is required.
    """

    app_id: int = Field(..., description="GitHub App ID (JWT issuer)")
    installation_id: int = Field(..., description="Installation ID of the App on the repository")
    private_key: SecretStr | None = Field(default=None, description="PEM-encoded App private key")
    private_key_path: str | None = Field(default=None, description="Path to the PEM-encoded App private key")
    api_url: HttpUrl = Field(default="https://api.github.com", description="GitHub API base URL")
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    bot_login: str = Field(default="repo-autopilot[bot]", description="Login the App posts as")

    @model_validator(mode="after")
    def validate_key_source(self) -> GitHubAppConfig:
        """Require exactly one private key source."""
        if (self.private_key is None) == (self.private_key_path is None):
            raise ValueError("Exactly one of private_key or private_key_path must be set")
        return self

    def load_private_key(self) -> str:
        """Return the PEM private key text.

        Raises:
            ConfigurationError: If the key file cannot be read
        """
        if self.private_key is not None:
            return self.private_key.get_secret_value()
        try:
            return Path(self.private_key_path).read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read GitHub App private key: {self.private_key_path}") from e


class WebhookConfig(BaseModel):
    """Inbound webhook configuration."""

    secret: SecretStr = Field(..., description="Shared secret used to sign webhook deliveries")


class RepositoryConfig(BaseModel):
    """Repository configuration."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    default_branch: str = Field(default="main", description="Default branch name")


class AgentProviderConfig(BaseModel):
    """AI completion service configuration (OpenAI-compatible API)."""

    base_url: str = Field(default="http://localhost:8000/v1", description="API base URL")
    model: str = Field(default="default", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="Bearer API key, if the endpoint needs one")
    timeout: float = Field(default=300.0, gt=0, description="Per-request timeout in seconds")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Sampling temperature")


class WorkflowConfig(BaseModel):
    """Workflow behavior configuration."""

    state_directory: str = Field(default=".autopilot/state", description="Directory for state files")
    analysis_directory: str = Field(default="docs/analysis", description="Where analysis documents are committed")
    max_fix_attempts: int = Field(default=3, ge=1, le=3, description="CI fix attempts before escalation")
    approval_reaction: str = Field(default="+1", description="Reaction that approves a proposal")
    approvers: list[str] = Field(
        default_factory=list, description="Logins allowed to approve (empty means anyone but the bot)"
    )
    maintainer: str = Field(default="", description="Login to mention on escalation")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for retryable collaborator errors")
    retry_backoff: float = Field(default=2.0, ge=1.0, description="Exponential backoff base in seconds")


class TagsConfig(BaseModel):
    """Labels the orchestrator applies itself."""

    needs_attention: str = Field(default="needs-attention", description="Requires human intervention")


class AutopilotSettings(BaseSettings):
    """Main orchestrator settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    github: GitHubAppConfig
    webhook: WebhookConfig
    repository: RepositoryConfig
    agent_provider: AgentProviderConfig = Field(default_factory=AgentProviderConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    tags: TagsConfig = Field(default_factory=TagsConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.workflow.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> AutopilotSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            AutopilotSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        Args:
            content: String content with placeholders

        Returns:
            Content with environment variables substituted

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are preserved unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        lines = content.split("\n")
        return "\n".join(process_line(line) for line in lines)
