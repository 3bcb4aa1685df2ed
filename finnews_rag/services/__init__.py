# =============================================================================
# Services Package — Retrieval Core
# =============================================================================
# Contains the retrieval and ingestion logic, independent of any web layer:
#   - chunker.py: Token-window chunking with tiktoken (end-anchored windows)
#   - embedder.py: OpenAI-compatible embedding client with error translation
#   - vectorstore.py: Pluggable vector store protocol (pgvector, Chroma)
#   - query_expander.py: Stock → prioritised query variants with budgets
#   - retrieval.py: Concurrent multi-query search, threshold relaxation,
#     dedup and ranking
#   - ingestion.py: Chunk → embed → store, idempotent per article
#   - retry.py / errors.py: Shared retry policy and exception hierarchy
# =============================================================================
