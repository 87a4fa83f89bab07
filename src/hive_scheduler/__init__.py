"""
hive-scheduler package root.

Purpose
- Admission-controlled scheduling and coordination of AI work cycles across
  projects: per-project priority queues, token and rate budgets, a phase state
  machine per work item, human queries, and worker assignment.

Functional requirements
- No side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
