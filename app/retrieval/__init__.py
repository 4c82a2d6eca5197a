"""
Retrieval module: client for the external RAG server.
"""

# allows users to do: from app.retrieval import RAGClient, collect_sources
from .rag_client import RAGClient, RAGError, build_rag_context, collect_sources, select_top_results

__all__ = ['RAGClient', 'RAGError', 'build_rag_context', 'collect_sources', 'select_top_results']
