import hashlib
import os
from typing import Callable, List

EmbedFn = Callable[[str], List[float]]


class HashEmbedder:
    """
    Deterministic hash-based embedding (fast, no model download).

    Identical text always maps to the identical vector, which is all the core
    requires of an embedding function; it carries no semantic similarity.
    """

    def __init__(self, dim: int = 16):
        self.dim = dim

    def embed(self, text: str) -> List[float]:
        h = hashlib.sha256(text.encode()).digest()
        # produce dim floats in [-1,1]
        vals = []
        for i in range(self.dim):
            b = h[i % len(h)]
            vals.append(((b / 255.0) * 2) - 1)
        return vals

    __call__ = embed


class SentenceTransformerEmbedder:
    """Embeddings from a sentence-transformers model (install the `embeddings` extra)."""

    def __init__(self, model_name: str = None):
        from sentence_transformers import SentenceTransformer

        model_name = model_name or os.getenv("LOCAL_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
        self.model = SentenceTransformer(model_name)
        self.dim = len(self.model.encode("test"))

    def embed(self, text: str) -> List[float]:
        return self.model.encode(text).tolist()

    __call__ = embed
