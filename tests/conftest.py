"""
Expression Pipeline - Test Configuration and Fixtures
"""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from expression_pipeline.artifacts import (
    CandidateFeatureSet,
    DEResult,
    ExpressionMatrix,
    PipelineContext,
    SampleAnnotation,
)
from expression_pipeline.config import PipelineConfig


def make_annotation(n_case: int, n_control: int) -> SampleAnnotation:
    samples = [f"CASE_{i}" for i in range(n_case)] + [f"CTRL_{i}" for i in range(n_control)]
    table = pd.DataFrame(
        {
            "group": ["case"] * n_case + ["control"] * n_control,
            "tissue": "blood",
        },
        index=pd.Index(samples, name="sample_id"),
    )
    return SampleAnnotation(table=table, case_label="case", control_label="control")


def make_matrix(values: np.ndarray, annotation: SampleAnnotation, prefix: str = "F") -> ExpressionMatrix:
    features = [f"{prefix}{i:04d}" for i in range(values.shape[0])]
    return ExpressionMatrix(pd.DataFrame(values, index=features, columns=list(annotation.table.index)))


def make_de_result(scores: pd.Series, up=(), down=()) -> DEResult:
    """Minimal DEResult around a given score vector."""
    direction = pd.Series("none", index=scores.index)
    direction.loc[list(up)] = "up"
    direction.loc[list(down)] = "down"
    table = pd.DataFrame({
        "score": scores,
        "direction": direction,
        "significant": direction != "none",
        "q_value": np.where(direction != "none", 0.01, 1.0),
    })
    table.index.name = "feature_id"
    return DEResult(
        table=table, delta=1.0, cut_up=np.inf, cut_down=-np.inf, s0=0.1,
        false_discoveries=0.0, pi0=1.0, fdr=0.0, n_permutations=0,
        delta_table=pd.DataFrame(),
    )


def make_context(config, matrix, annotation, **artifacts) -> PipelineContext:
    return PipelineContext(config=config, matrix=matrix, annotation=annotation, **artifacts)


@pytest.fixture
def fast_config():
    """Small, quick settings for agent tests."""
    return PipelineConfig(
        random_seed=7,
        n_workers=2,
        n_permutations=60,
        permutation_chunk_size=16,
        delta_grid_size=20,
        n_trees=60,
        tree_batch_size=20,
        top_k=80,
        min_module_size=5,
        soft_power=6.0,
        enrichment_min_size=3,
        enrichment_permutations=100,
        block_size=7,
    )


@pytest.fixture
def small_dataset():
    """200 features x 12 samples (6 case / 6 control); 20 up and 20 down."""
    rng = np.random.default_rng(42)
    annotation = make_annotation(6, 6)
    values = rng.normal(8.0, 1.0, size=(200, 12))
    values[:20, :6] += 6.0
    values[20:40, :6] -= 6.0
    return make_matrix(values, annotation), annotation


@pytest.fixture
def two_cluster_dataset():
    """Two tight 5-feature clusters driven by latent factors correlated at 1/9.

    Within-cluster features correlate at 0.9 and across clusters at 0.1.
    The first factor follows the phenotype, the second does not.
    """
    rng = np.random.default_rng(11)
    annotation = make_annotation(20, 20)
    labels = annotation.labels_for(annotation.table.index)

    def standardize(v):
        return (v - v.mean()) / v.std()

    f1 = standardize((labels - 0.5) * 2.0 + rng.normal(0, 0.5, size=40))
    noise = rng.normal(size=40)
    noise = standardize(noise - (noise @ f1) / (f1 @ f1) * f1)
    f2 = standardize(f1 / 9.0 + np.sqrt(1.0 - 1.0 / 81.0) * noise)
    factors = [f1, f2]

    rows = []
    for f in factors:
        for _ in range(5):
            rows.append(np.sqrt(0.9) * f + np.sqrt(0.1) * rng.normal(size=40))
    matrix = make_matrix(np.vstack(rows) + 8.0, annotation, prefix="G")

    features = matrix.feature_ids
    candidates = CandidateFeatureSet(up=tuple(features[:5]), down=tuple(features[5:]))
    return matrix, annotation, candidates


@pytest.fixture
def temp_output(tmp_path):
    """Per-test output directory."""
    out = tmp_path / "output"
    out.mkdir()
    return out
