"""
toolrun - permission-checked, sandboxed execution of agent tool calls.

Submodules are not re-exported here to keep imports acyclic. Import them
directly::

    from toolrun.core.queue import ToolUseQueue
    from toolrun.permissions.engine import PermissionEngine
"""

__version__ = "0.1.0"
