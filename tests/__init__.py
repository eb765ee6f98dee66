"""
Test Suite for the Operator Job Controller

- Data model, skill registry, planner, executors and store (unit)
- Orchestrator lifecycle: dispatch, approvals, retry, cancellation, recovery
- HTTP surface through FastAPI's TestClient
"""
