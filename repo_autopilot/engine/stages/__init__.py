"""Workflow stage implementations.

Available Stages:
    - IssueWorkflow: Issue analysis, approval wait and action execution
    - CIFailureHandler: Fix failing CI within the attempt budget
    - ReviewHandler: Answer review comments
    - MergeGate: Merge pull requests once every condition holds

Each stage inherits from WorkflowStage.
"""
