import hashlib
import threading
from typing import List

import fitz
import numpy as np
import pytest

from primer.core.config import PipelineConfig
from primer.core.embed import EmbeddingProvider
from primer.core.faiss_index import FaissVectorStore
from primer.core.pipeline import RagPipeline

DIMENSIONS = 8

E2E_TEXT = "Chapter 1: Intro\nSome intro text.\n\n1.1 Basics\nBasics text here."


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic vectors derived from the text; texts containing a poison marker fail."""

    def __init__(self, dimensions: int = DIMENSIONS, poison: str = "POISON"):
        self.dimensions = dimensions
        self.poison = poison
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def vector_for(self, text: str) -> List[float]:
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
        return np.random.default_rng(seed).normal(size=self.dimensions).tolist()

    def create_embeddings(self, model: str, texts: List[str], dimensions: int) -> List[List[float]]:
        with self._lock:
            self.calls.append(list(texts))
        if self.poison and any(self.poison in text for text in texts):
            raise RuntimeError("provider rejected input")
        return [self.vector_for(text) for text in texts]


@pytest.fixture
def config():
    return PipelineConfig(
        embedding_dimensions=DIMENSIONS,
        batch_size=4,
        max_concurrent_requests=2,
        max_retries=3,
        retry_delay=0.0,
        batch_delay=0.0,
        chunk_size=200,
        chunk_overlap=40,
        min_chunk_size=50,
        index_path=None,
    )


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def store():
    return FaissVectorStore(DIMENSIONS)


@pytest.fixture
def pipeline(config, provider, store):
    return RagPipeline(config, provider, store, sleep=lambda seconds: None)


def write_pdf(path, lines):
    """Write a one-page PDF containing the given text lines; empty lines leave a gap."""
    doc = fitz.open()
    page = doc.new_page()
    y = 72
    for line in lines:
        if line:
            page.insert_text((72, y), line, fontsize=11)
        y += 16
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def pdf_dir(tmp_path):
    directory = tmp_path / "pdfs"
    directory.mkdir()
    write_pdf(directory / "biology.pdf", [
        "Chapter 1: Cells",
        "Cells are the basic unit of life.",
        "",
        "1.1 Membranes",
        "Membranes separate the cell from its surroundings.",
    ])
    write_pdf(directory / "physics.pdf", [
        "Chapter 1: Motion",
        "Objects in motion stay in motion.",
    ])
    return directory
