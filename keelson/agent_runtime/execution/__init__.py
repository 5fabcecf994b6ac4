"""Execution pipeline for the agent runtime.

This package contains the core execution components:

- **processor**: Stream processing (provider events -> persisted parts, retries)
- **loop**: Step orchestration (one processor run per tool round)
- **collaborators**: Snapshot, permission and summary interfaces with defaults
"""
