"""
replicadb test suite.

This package contains:
- unit/: Pure libraries, store backends, planner, outbox, schema, config
- integration/: Model engine, sync worker, pull application, merges
"""
