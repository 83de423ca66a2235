"""Configuration system for the orchestrator.

This package provides type-safe configuration management using Pydantic,
including settings for the GitHub App, the webhook secret, the repository,
the AI agent endpoint, workflow knobs and tags.

Key Components:
    - AutopilotSettings: Main configuration container with YAML loading support
    - GitHubAppConfig: App id, installation id and private key
    - RepositoryConfig: Repository settings
    - AgentProviderConfig: AI agent configuration
    - WorkflowConfig: Fix budget, approval reaction, maintainer, retries

Example:
    >>> from repo_autopilot.config.settings import AutopilotSettings
    >>> settings = AutopilotSettings.from_yaml("autopilot.yaml")
    >>> settings.workflow.max_fix_attempts
    3
"""
