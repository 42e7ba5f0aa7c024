"""Event type constants for SpecPilot."""

# Session lifecycle events
SESSION_CREATED = "session_created"
SESSION_DELETED = "session_deleted"
TURN_STARTED = "turn_started"
TURN_COMPLETED = "turn_completed"
TURN_FAILED = "turn_failed"
STAGE_TRANSITION = "stage_transition"
FORCED_ADVANCE = "forced_advance"

# Agent events
AGENT_STARTED = "agent_started"
AGENT_COMPLETED = "agent_completed"
AGENT_FAILED = "agent_failed"

# Model events
MODEL_INVOCATION = "model_invocation"
CACHE_HIT = "cache_hit"
STRUCTURED_OUTPUT_REPAIRED = "structured_output_repaired"

# Reliability events
CIRCUIT_STATE_CHANGED = "circuit_state_changed"
