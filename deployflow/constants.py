"""Shared constants for deployflow."""

WORKFLOW_KEY_PREFIX = "workflow:"

# Records soft-expire 24 hours after their last write.
WORKFLOW_TTL_SECONDS = 24 * 60 * 60

# Compare-and-swap attempts before a store write gives up.
DEFAULT_MAX_WRITE_ATTEMPTS = 5

RESULTS_TOPIC = "deployflow.results"
TRANSPORT_KEY_PREFIX = "deployflow:"
