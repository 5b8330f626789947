"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Query embedding (local sentence-transformers model or Ollama)
- Similarity search through the match_document_sections RPC
- Prompt assembly with document context
- Streaming chat completion relay
"""
