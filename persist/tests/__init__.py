"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Record codec (predicates, builders, wire shape)
    - Session state machine (update, release, handoff)
    - Store acquisition protocol (backoff, steal, stale locks)
    - Autosave scheduling and coordinated shutdown
    - Storage backends (in-memory, Redis WATCH/MULTI)
"""
