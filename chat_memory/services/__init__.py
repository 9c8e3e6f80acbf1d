from .embeddings import EmbeddingProvider, GeminiEmbeddingClient, OllamaEmbeddingClient, build_embedding_provider

__all__ = ["EmbeddingProvider", "GeminiEmbeddingClient", "OllamaEmbeddingClient", "build_embedding_provider"]
