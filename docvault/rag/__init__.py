from docvault.rag.ranker import RetrievalRanker, SearchResult

__all__ = ["RetrievalRanker", "SearchResult"]
