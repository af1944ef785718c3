"""Memory subsystem package.

Architectural role:
    Groups the per-companion long-term memory components:
    - `models`: the immutable `Memory` record.
    - `scoring`: hybrid relevance scoring and deterministic ranking.
    - `repositories`: in-memory and FAISS-backed persistence.
    - `memory_store`: validation, ranked recall, decay and expiry.
    - `embedding_model`: embedding provider contract and local model.
"""
