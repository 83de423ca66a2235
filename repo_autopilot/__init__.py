"""repo-autopilot: event-driven issue-to-merge automation for GitHub repositories."""

__version__ = "0.1.0"
