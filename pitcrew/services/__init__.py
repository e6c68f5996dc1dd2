"""Background and orchestration services."""
