"""
flowcore - workflow execution engine.

Runs declarative graphs of typed nodes (input, AI process, code, condition,
switch, loop, merge, HTTP, notification, ...) with branching, bounded loops,
parallel merge, checkpoint-based resume and live progress events.
"""

__version__ = "0.1.0"
