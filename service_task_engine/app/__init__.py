"""
Task Engine Service package for OpsFlow.

This package detects grey-area situations in business data and turns them
into tracked tasks. It provides:

- app.main: API surface for events, queues, tasks, workload and rules.
- app.engine: Facade wiring the components below around one store.
- app.store: Document store abstraction (in-memory and Redis backends).
- app.rules: Detection rule catalog, condition evaluation and matching.
- app.queue: Task model, lifecycle state machine and the ordered queue.
- app.identity: Mapping of external user ids onto personnel records.
- app.workload: Per-person workload accounting.
- app.assignment: Assignment, reassignment, take-up and routing.

Guidelines:
- Rule evaluation is pure; persistence lives in the queue and store.
- Every task write goes through compare-and-swap on the document version.
- Keep decisions observable (metrics + structured logs).
"""
