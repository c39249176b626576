"""Test fixtures for Vectoria."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

TOPICS = {
    "astronomy": (
        "Telescopes observe distant galaxies and nebulae. Astronomers measure starlight spectra, "
        "planetary orbits and the expansion of the universe using orbital observatories."
    ),
    "cooking": (
        "Recipes combine flour, butter and sugar. Bakers knead dough, proof bread overnight and "
        "roast vegetables in ovens while simmering sauces on the stove."
    ),
    "finance": (
        "Investors compare stock dividends, bond yields and market volatility. Portfolio managers "
        "rebalance assets and hedge currency exposure across quarterly earnings reports."
    ),
}


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("VECTORIA_DB_PATH", str(tmp_path / "vectoria.db"))
    monkeypatch.setenv("VECTORIA_EMBEDDING_BACKEND", "hashed")
    monkeypatch.setenv("VECTORIA_GENERATION_BACKEND", "template")
    monkeypatch.setenv("VECTORIA_UMAP_N_EPOCHS", "50")
    monkeypatch.setenv("VECTORIA_HDBSCAN_MIN_CLUSTER_SIZE", "3")
    monkeypatch.setenv("VECTORIA_HDBSCAN_MIN_SAMPLES", "2")
    monkeypatch.delenv("VECTORIA_CONFIG", raising=False)

    from vectoria.api import dependencies as deps

    deps.reset_dependencies()
    yield
    deps.reset_dependencies()


@pytest.fixture(scope="session")
def corpus_records() -> list[dict]:
    """Twelve short records, four per topic."""
    records = []
    for topic, text in TOPICS.items():
        for variant in range(4):
            records.append(
                {
                    "text": f"{text} Entry {variant} about {topic} number {variant * 7 + 3}.",
                    "topic": topic,
                    "rating": variant + 1,
                }
            )
    return records


@pytest.fixture
def embedding_service():
    from vectoria.ingest.embeddings import EmbeddingService, HashedEmbeddingBackend

    return EmbeddingService(HashedEmbeddingBackend(dim=64), batch_size=8)
