"""Integration tests for repo-autopilot.

These tests run signed webhook deliveries through the gateway and the
orchestrator against in-memory code-host and agent collaborators and a real
state directory.

Run with: pytest tests/integration/ -v -m integration
"""
