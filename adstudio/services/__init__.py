"""Business logic services for the orchestration layer."""
