"""
Pipeline configuration.

One explicit configuration object is built per run and validated before
stage 1. Agents read their parameters from it; nothing is kept in module
globals.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .gene_sets import GeneSetCollection
from .utils.errors import ConfigurationError

IMPORTANCE_METHODS = ("impurity", "permutation")
EXPORT_WEIGHTS = ("tom", "adjacency")
ENRICHMENT_RANKINGS = ("all", "candidates")


@dataclass
class PipelineConfig:
    # Sample annotation
    case_label: str = "case"
    control_label: str = "control"

    # Shared
    random_seed: int = 42
    n_workers: Optional[int] = None
    timeout_seconds: Optional[float] = None

    # Agent 1: permutation test
    n_permutations: int = 1000
    delta: Optional[float] = None
    target_fdr: float = 0.05
    s0_percentile: float = 50.0
    delta_grid_size: int = 50
    permutation_chunk_size: int = 50

    # Agent 2: ensemble refinement
    n_trees: int = 500
    top_k: int = 500
    importance_method: str = "impurity"
    tree_batch_size: int = 50

    # Agent 3: co-expression network
    soft_power: float = 6.0
    min_module_size: int = 10
    merge_cut_height: float = 0.25
    cut_height: Optional[float] = None
    split_sensitivity: float = 0.25
    reassign_threshold: Optional[float] = None
    max_dense_features: int = 5000
    blockwise_fallback: bool = False
    block_size: int = 500

    # Agent 4: module-trait association
    trait_pvalue_cutoff: float = 0.05
    hub_features_per_module: int = 10

    # Agent 5: enrichment
    gene_set_collections: List[str] = field(
        default_factory=lambda: ["H", "C2:CP:KEGG", "C2:CP:REACTOME", "C5:GO:BP"]
    )
    enrichment_min_size: int = 5
    enrichment_max_size: int = 500
    enrichment_permutations: int = 1000
    enrichment_padj_cutoff: float = 0.05
    enrichment_ranking: str = "all"

    # Agent 6: export
    export_threshold: float = 0.02
    export_weight: str = "tom"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {sorted(unknown)}", stage="config")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Path) -> "PipelineConfig":
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def collections(self) -> List[GeneSetCollection]:
        return [GeneSetCollection.parse(key) for key in self.gene_set_collections]

    def validate(self) -> "PipelineConfig":
        """Raise ConfigurationError on the first invalid parameter."""
        def fail(message: str) -> None:
            raise ConfigurationError(message, stage="config")

        if self.case_label == self.control_label:
            fail("case_label and control_label must differ")
        if self.n_workers is not None and self.n_workers < 1:
            fail("n_workers must be >= 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            fail("timeout_seconds must be positive")

        if self.n_permutations < 1:
            fail("n_permutations must be >= 1")
        if self.delta is not None and self.delta < 0:
            fail("delta must be >= 0")
        if not 0 < self.target_fdr < 1:
            fail("target_fdr must be in (0, 1)")
        if not 0 <= self.s0_percentile <= 100:
            fail("s0_percentile must be in [0, 100]")
        if self.delta_grid_size < 2:
            fail("delta_grid_size must be >= 2")
        if self.permutation_chunk_size < 1:
            fail("permutation_chunk_size must be >= 1")

        if self.n_trees < 1 or self.tree_batch_size < 1:
            fail("n_trees and tree_batch_size must be >= 1")
        if self.top_k < 1:
            fail("top_k must be >= 1")
        if self.importance_method not in IMPORTANCE_METHODS:
            fail(f"importance_method must be one of {IMPORTANCE_METHODS}")

        if self.soft_power < 1:
            fail("soft_power must be >= 1")
        if self.min_module_size < 1:
            fail("min_module_size must be >= 1")
        if not 0 < self.merge_cut_height < 1:
            fail("merge_cut_height must be in (0, 1)")
        if self.cut_height is not None and not 0 < self.cut_height <= 1:
            fail("cut_height must be in (0, 1]")
        if not 0 <= self.split_sensitivity <= 1:
            fail("split_sensitivity must be in [0, 1]")
        if self.reassign_threshold is not None and not 0 < self.reassign_threshold <= 1:
            fail("reassign_threshold must be in (0, 1]")
        if self.max_dense_features < 2:
            fail("max_dense_features must be >= 2")
        if self.block_size < 1:
            fail("block_size must be >= 1")

        if not 0 < self.trait_pvalue_cutoff < 1:
            fail("trait_pvalue_cutoff must be in (0, 1)")
        if self.hub_features_per_module < 0:
            fail("hub_features_per_module must be >= 0")

        if self.enrichment_min_size < 1:
            fail("enrichment_min_size must be >= 1")
        if self.enrichment_min_size > self.enrichment_max_size:
            fail("enrichment_min_size must not exceed enrichment_max_size")
        if self.enrichment_permutations < 1:
            fail("enrichment_permutations must be >= 1")
        if not 0 < self.enrichment_padj_cutoff <= 1:
            fail("enrichment_padj_cutoff must be in (0, 1]")
        if self.enrichment_ranking not in ENRICHMENT_RANKINGS:
            fail(f"enrichment_ranking must be one of {ENRICHMENT_RANKINGS}")
        # Resolves every collection string; unknown pairs raise here.
        self.collections

        if not 0 <= self.export_threshold <= 1:
            fail("export_threshold must be in [0, 1]")
        if self.export_weight not in EXPORT_WEIGHTS:
            fail(f"export_weight must be one of {EXPORT_WEIGHTS}")

        return self
