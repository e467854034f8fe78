"""
Task queue package.

- models: Task, draft, checklist and priority band models.
- state_machine: Allowed lifecycle transitions.
- task_queue: Persistent, ordered, de-duplicated task queue.
"""
