"""Export services: job store, validation, orchestration, delivery and cleanup."""
