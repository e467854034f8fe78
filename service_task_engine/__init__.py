"""
OpsFlow Task Engine service.

Turns business entity changes into prioritized, de-duplicated work items
and routes them to the people who should handle them.
"""
