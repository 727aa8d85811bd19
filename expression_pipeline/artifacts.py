"""
Pipeline artifacts.

Each artifact is produced once by its owning agent and handed downstream
as a read-only reference. Agents build new artifacts instead of editing
the ones they receive; the orchestrator threads them through a
PipelineContext.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

UNASSIGNED = "grey"


@dataclass(frozen=True)
class ExpressionMatrix:
    """Features x samples, log-scale intensities."""

    values: pd.DataFrame

    def __post_init__(self):
        # Feature and sample ids are looked up as strings downstream
        values = self.values.copy()
        values.index = pd.Index([str(f) for f in values.index], name=values.index.name)
        values.columns = pd.Index([str(s) for s in values.columns], name=values.columns.name)
        object.__setattr__(self, "values", values)

    @property
    def feature_ids(self) -> List[str]:
        return list(self.values.index)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.values.columns)

    def subset(self, features: Sequence[str]) -> "ExpressionMatrix":
        return ExpressionMatrix(self.values.loc[list(features)].copy())

    def as_array(self) -> np.ndarray:
        return self.values.to_numpy(dtype=float)


@dataclass(frozen=True)
class SampleAnnotation:
    """Per-sample group label and tissue tag, indexed by sample id."""

    table: pd.DataFrame
    case_label: str = "case"
    control_label: str = "control"

    def __post_init__(self):
        table = self.table.copy()
        table.index = pd.Index([str(s) for s in table.index], name=table.index.name)
        object.__setattr__(self, "table", table)

    def samples_in(self, group: str) -> List[str]:
        return [str(s) for s in self.table.index[self.table["group"] == group]]

    def group_sizes(self) -> Dict[str, int]:
        return {
            self.case_label: len(self.samples_in(self.case_label)),
            self.control_label: len(self.samples_in(self.control_label)),
        }

    def labels_for(self, sample_ids: Sequence[str]) -> np.ndarray:
        """Binary phenotype (1 = case, 0 = control) in the given column order."""
        groups = self.table.loc[list(sample_ids), "group"]
        return (groups == self.case_label).to_numpy(dtype=int)


@dataclass(frozen=True)
class DEResult:
    """Permutation-based two-class test result."""

    table: pd.DataFrame
    delta: float
    cut_up: float
    cut_down: float
    s0: float
    false_discoveries: float
    pi0: float
    fdr: float
    n_permutations: int
    delta_table: pd.DataFrame

    @property
    def up_features(self) -> List[str]:
        return self.table.index[self.table["direction"] == "up"].tolist()

    @property
    def down_features(self) -> List[str]:
        return self.table.index[self.table["direction"] == "down"].tolist()

    @property
    def n_significant(self) -> int:
        return int(self.table["significant"].sum())

    def ranked_scores(self) -> pd.Series:
        """Signed statistic sorted from most up- to most down-regulated."""
        return self.table["score"].sort_values(ascending=False)


@dataclass(frozen=True)
class ImportanceRanking:
    table: pd.DataFrame
    oob_score: float
    method: str
    n_trees: int

    def top(self, k: int) -> List[str]:
        return self.table.sort_values("rank").index[:k].tolist()


@dataclass(frozen=True)
class CandidateFeatureSet:
    up: Tuple[str, ...]
    down: Tuple[str, ...]

    @property
    def features(self) -> List[str]:
        return list(self.up) + list(self.down)

    def direction_of(self, feature: str) -> str:
        if feature in self.up:
            return "up"
        if feature in self.down:
            return "down"
        return "none"

    def __len__(self) -> int:
        return len(self.up) + len(self.down)


@dataclass(frozen=True)
class GeneSet:
    name: str
    genes: FrozenSet[str]
    category: str
    subcategory: Optional[str] = None


@dataclass(frozen=True)
class EnrichmentResult:
    term: str
    enrichment_score: float
    normalized_score: float
    pvalue: float
    padj: float
    fdr_gsea: float
    set_size: int
    collection: str
    leading_edge: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EnrichmentReport:
    results: Tuple[EnrichmentResult, ...]
    tested: Tuple[str, ...]
    skipped: Dict[str, str] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        columns = [
            "collection", "term", "enrichment_score", "normalized_score",
            "pvalue", "padj", "fdr_gsea", "set_size", "leading_edge",
        ]
        rows = [
            {
                "collection": r.collection,
                "term": r.term,
                "enrichment_score": r.enrichment_score,
                "normalized_score": r.normalized_score,
                "pvalue": r.pvalue,
                "padj": r.padj,
                "fdr_gsea": r.fdr_gsea,
                "set_size": r.set_size,
                "leading_edge": ";".join(r.leading_edge),
            }
            for r in self.results
        ]
        return pd.DataFrame(rows, columns=columns)


@dataclass(frozen=True)
class CoexpressionNetwork:
    """Signed weighted network over the candidate features."""

    feature_ids: Tuple[str, ...]
    correlation: np.ndarray
    adjacency: np.ndarray
    tom: np.ndarray
    soft_power: float
    excluded_features: Tuple[str, ...] = ()
    linkage: Optional[np.ndarray] = None
    blockwise: bool = False

    @property
    def size(self) -> int:
        return len(self.feature_ids)

    def index_of(self, feature: str) -> int:
        return self.feature_ids.index(feature)


@dataclass(frozen=True)
class Module:
    label: str
    features: Tuple[str, ...]
    eigengene: pd.Series
    variance_explained: float

    @property
    def size(self) -> int:
        return len(self.features)


@dataclass(frozen=True)
class ModulePartition:
    modules: Tuple[Module, ...]
    assignment: pd.Series
    unassigned: Tuple[str, ...] = ()
    merged: Tuple[Tuple[str, str], ...] = ()

    @property
    def labels(self) -> List[str]:
        return [m.label for m in self.modules]

    def module(self, label: str) -> Module:
        for m in self.modules:
            if m.label == label:
                return m
        raise KeyError(label)


@dataclass(frozen=True)
class ModuleTraitAssociation:
    label: str
    correlation: float
    pvalue: float
    significant: bool
    n_features: int


@dataclass(frozen=True)
class ModuleTraitResult:
    associations: Tuple[ModuleTraitAssociation, ...]
    membership: pd.DataFrame
    hub_features: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "module": a.label,
                    "n_features": a.n_features,
                    "correlation": a.correlation,
                    "pvalue": a.pvalue,
                    "significant": a.significant,
                }
                for a in self.associations
            ],
            columns=["module", "n_features", "correlation", "pvalue", "significant"],
        )


@dataclass(frozen=True)
class PipelineContext:
    """Immutable bag of artifacts threaded from stage to stage."""

    config: Any
    matrix: ExpressionMatrix
    annotation: SampleAnnotation
    de_result: Optional[DEResult] = None
    importance: Optional[ImportanceRanking] = None
    candidates: Optional[CandidateFeatureSet] = None
    network: Optional[CoexpressionNetwork] = None
    partition: Optional[ModulePartition] = None
    trait: Optional[ModuleTraitResult] = None
    enrichment: Optional[EnrichmentReport] = None
    exports: Optional[Dict[str, str]] = None

    def with_artifacts(self, **artifacts: Any) -> "PipelineContext":
        return replace(self, **artifacts)
