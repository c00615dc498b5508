"""Local sentence-transformers embeddings for offline use."""

import logging
from typing import Any, Dict, List

from primer.core.embed import EmbeddingProvider
from primer.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


class LocalEmbeddingProvider(EmbeddingProvider):
    """Embed texts with a sentence-transformers model on the local machine."""

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL, device: str = "cpu", encode_batch_size: int = 32):
        """
        Load the model.

        Args:
            model_name: Name of the sentence-transformers model to use
            device: Torch device, e.g. "cpu" or "cuda"
            encode_batch_size: Batch size passed to ``encode``

        Raises:
            ConfigurationError: sentence-transformers is not installed
        """
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ConfigurationError(
                "Local embeddings need sentence-transformers: pip install 'primer[local]'"
            ) from e

        logger.info(f"Loading local embedding model: {model_name}")
        self.model_name = model_name
        self.encode_batch_size = encode_batch_size
        self.model = SentenceTransformer(model_name, device=device)
        self.dimension = self.model.get_sentence_embedding_dimension()
        logger.info(f"Loaded model with dimension: {self.dimension}")

    def create_embeddings(self, model: str, texts: List[str], dimensions: int) -> List[List[float]]:
        # The model decides the vector size; a mismatch is caught by validation
        embeddings = self.model.encode(
            texts,
            batch_size=self.encode_batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [embedding.tolist() for embedding in embeddings]

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "dimension": self.dimension,
        }
