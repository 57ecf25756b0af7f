"""Embedding and retrieval caches used by the knowledge stage."""

from .embeddings import EmbeddingCache, OpenAIEmbeddingService, blend_vectors, cosine_similarity
from .retrieval_cache import RetrievalCache, RetrievalHistory, RetrievalTurn

__all__ = [
	"EmbeddingCache",
	"OpenAIEmbeddingService",
	"RetrievalCache",
	"RetrievalHistory",
	"RetrievalTurn",
	"blend_vectors",
	"cosine_similarity",
]
