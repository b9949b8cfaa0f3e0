"""Agent runtime -- turn loop, approvals, background tasks, context budget.

Import from the submodules directly (``termagent.runtime.core`` etc.); the
tool registry depends on ``runtime.models``, so this package stays import-free.
"""
