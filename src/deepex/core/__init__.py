"""
Resumable reasoning core: fixed pipelines run by a state machine under a
per-invocation time budget, with checkpoint/resume, parallel fan-out and a
progress event channel.

Import from the submodules directly, e.g. ``from deepex.core.engine import
ReasoningEngine``.
"""
