"""plantree - plan-driven task orchestrator.

Turns checklist plans into a dependency graph of tasks, leases tasks to one
worker at a time, and supervises an external agent process per task.
"""

__version__ = "0.1.0"
