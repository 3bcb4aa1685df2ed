# =============================================================================
# Financial News RAG — Retrieval Core
# =============================================================================
# Retrieves news context for stock analysis. Articles are chunked into
# overlapping token windows and embedded; at query time a stock fans out into
# several query variants whose results are relaxed, merged and ranked.
#
# Package structure:
#   finnews_rag/
#   ├── db/           → Database engines, sessions, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Chunking, embedding, vector stores, query expansion,
#   │                    retrieval orchestration, ingestion
#   └── workers/      → Celery ingestion tasks and configuration
# =============================================================================
