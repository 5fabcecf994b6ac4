"""Data access managers for the agent runtime.

Managers wrap the ``Storage`` collaborator with domain operations and
announce changes on the ``EventBus``.  They raise domain exceptions
(``NotFoundError``, ``ValueError``) and never touch stream processing.
"""
