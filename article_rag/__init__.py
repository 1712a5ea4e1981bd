"""Article RAG service: per-owner document ingestion and grounded answering."""
