"""
DeepEx: a resumable multi-stage LLM reasoning engine.

Runs classification, decomposition, multi-perspective solving, critique and
synthesis under a hard wall-clock budget per invocation, checkpointing when
the budget runs out so the next invocation can pick up where it stopped.
"""

__version__ = "1.0.0"
