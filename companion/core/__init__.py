"""Core orchestration package.

Architectural role:
    Runs chat turns between the transports (HTTP, CLI) and the lower-level
    subsystems (registry, memory store, prompting, providers).

Composition:
    - `models`: turn-level request/response and stream event types.
    - `session`: session states, cancellation tokens and per-companion locks.
    - `coordinator`: the per-companion turn state machine.
    - `engine`: composition root (`build_engine`) and `CompanionEngine` facade.

Package import is side-effect free; submodules are imported explicitly.
"""
