"""Domain records, collaborator value types and webhook events."""
