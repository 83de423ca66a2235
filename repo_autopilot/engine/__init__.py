"""Workflow orchestration engine.

Key Components:
    - WorkflowOrchestrator: Routes events to stages under per-entity locks
    - WebhookGateway: Signature verification and event classification
    - StateManager: Durable per-entity records with conflict detection
    - KeyedLock: Per-entity serialization
    - strategy / branching / approval: Pure policy functions

Workflow Stages:
    - IssueWorkflow: Analysis, approval and per-action execution
    - CIFailureHandler: Bounded CI auto-fix loop with escalation
    - ReviewHandler: Replies to review comments
    - MergeGate: Merge readiness and merge
"""
