# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas at the consumer boundary of the
# retrieval core. These are SEPARATE from the database models
# (finnews_rag/db/models.py) and from the internal dataclasses in services/.
# =============================================================================
