"""
Operator Job Controller

Server-side owner of the Plan -> Job -> Step -> Approval lifecycle for the
AI operator console.

- Plans are produced from a free-text goal by a Planner (workflow templates)
- Plans are dispatched as Jobs made of ordered, 1-based JobSteps
- Critical steps are gated behind a human Approval BEFORE the skill runs
- Failed steps are retried explicitly, one step at a time (no auto-retry)
- Skills carry an autonomy policy (assist / approve / auto_safe) that
  overrides the plan's own criticality flags
- Every step and approval transition is appended to an audit log

The controller is the single writer of Job/JobStep/Approval/Artifact state.
The presentation layer only submits commands and reads snapshots.
"""

__version__ = "0.3.0"

SERVICE_NAME = "AI Operator - Job Controller"
