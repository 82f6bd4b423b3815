"""
digest_batch.services -- run state, error sink, coordinator and scheduler.

Import the concrete modules directly; this package does not re-export them
so the stages can depend on ``error_sink`` without pulling in the
coordinator.
"""
