"""
Agent 1: Differentially Expressed Feature (DEG) Analysis

Permutation-based two-class test (SAM-style moderated difference statistic).

Input (PipelineContext):
- matrix: features x samples, log-scale intensities
- annotation: case/control label per sample

Output:
- de_result: DEResult artifact
- deg_all_results.csv: statistic, expected order statistic and call per feature
- deg_significant.csv: called up/down features
- delta_table.csv: delta -> called / median false calls / FDR
- meta_agent1_deg.json: Execution metadata
"""

from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from ..artifacts import DEResult
from ..utils.base_agent import BaseAgent
from ..utils.concurrency import chunked, run_in_pool
from ..utils.errors import InputError


def group_moments(x: np.ndarray, labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Difference of group means and its pooled standard error, per feature."""
    case = labels == 1
    n1, n2 = int(case.sum()), int((~case).sum())
    m1 = x[:, case].mean(axis=1)
    m2 = x[:, ~case].mean(axis=1)
    ss = ((x[:, case] - m1[:, None]) ** 2).sum(axis=1) + ((x[:, ~case] - m2[:, None]) ** 2).sum(axis=1)
    s = np.sqrt((1.0 / n1 + 1.0 / n2) * ss / (n1 + n2 - 2))
    return m1 - m2, s


def estimate_s0(s: np.ndarray, percentile: float) -> float:
    """Fudge constant: a percentile of the per-feature standard errors, kept positive."""
    s0 = float(np.percentile(s, percentile))
    return max(s0, np.finfo(float).eps)


def d_statistic(x: np.ndarray, label_matrix: np.ndarray, s0: float) -> np.ndarray:
    """Moderated statistic for several labelings at once.

    ``label_matrix`` is samples x labelings (1 = case). Returns features x
    labelings.
    """
    x_sq = x ** 2
    ind = label_matrix.astype(float)
    n1 = ind.sum(axis=0)
    n2 = ind.shape[0] - n1
    n = ind.shape[0]

    sum1 = x @ ind
    sum2 = x.sum(axis=1)[:, None] - sum1
    sq1 = x_sq @ ind
    sq2 = x_sq.sum(axis=1)[:, None] - sq1

    m1 = sum1 / n1
    m2 = sum2 / n2
    ss = np.clip(sq1 - n1 * m1 ** 2 + sq2 - n2 * m2 ** 2, 0.0, None)
    s = np.sqrt((1.0 / n1 + 1.0 / n2) * ss / (n - 2))
    return (m1 - m2) / (s + s0)


def cut_points(sorted_scores: np.ndarray, expected: np.ndarray, delta: float) -> Tuple[float, float]:
    """First-crossing cut points on either side of the null centre.

    Up: smallest rank with positive expectation whose observed score
    exceeds it by more than delta. Down: mirror image. Missing crossings
    are +/- infinity (no calls).
    """
    distance = sorted_scores - expected

    up_idx = np.flatnonzero((distance > delta) & (expected > 0))
    cut_up = float(sorted_scores[up_idx[0]]) if len(up_idx) else np.inf

    down_idx = np.flatnonzero((-distance > delta) & (expected < 0))
    cut_down = float(sorted_scores[down_idx[-1]]) if len(down_idx) else -np.inf

    return cut_up, cut_down


def null_call_counts(null_sorted: np.ndarray, cut_up: float, cut_down: float) -> np.ndarray:
    """Calls made by each permuted (sorted) statistic vector at the given cut points."""
    n_features = null_sorted.shape[1]
    counts = np.empty(null_sorted.shape[0], dtype=float)
    for b, row in enumerate(null_sorted):
        above = n_features - np.searchsorted(row, cut_up, side="left") if np.isfinite(cut_up) else 0
        below = np.searchsorted(row, cut_down, side="right") if np.isfinite(cut_down) else 0
        counts[b] = above + below
    return counts


class DEGAgent(BaseAgent):
    """Agent for permutation-based differential expression analysis."""

    def __init__(self, output_dir, context, token=None, permutations: Optional[np.ndarray] = None):
        super().__init__("agent1_deg", output_dir, context, token)
        # Explicit labelings (permutations x samples), mainly for tests
        self.permutations = permutations

        self.x: Optional[np.ndarray] = None
        self.labels: Optional[np.ndarray] = None

    def validate_inputs(self) -> bool:
        """Validate matrix and two-group labels."""
        self.check_sample_alignment()

        matrix = self.context.matrix
        self.x = matrix.as_array()
        self.labels = self.context.annotation.labels_for(matrix.sample_ids)

        if self.permutations is not None:
            perms = np.asarray(self.permutations)
            if perms.ndim != 2 or perms.shape[1] != len(self.labels):
                raise InputError(
                    f"permutations must be (n, {len(self.labels)}), got {perms.shape}",
                    stage=self.agent_name,
                )

        sizes = self.context.annotation.group_sizes()
        self.logger.info(f"Matrix: {self.x.shape[0]} features, {self.x.shape[1]} samples")
        self.logger.info(f"Groups: {sizes}")
        return True

    def _generate_permutations(self) -> np.ndarray:
        if self.permutations is not None:
            return np.asarray(self.permutations, dtype=int)

        rng = np.random.default_rng(self.config.random_seed)
        return np.vstack([
            rng.permutation(self.labels) for _ in range(self.config.n_permutations)
        ])

    def _permutation_null(self, s0: float) -> np.ndarray:
        """Sorted statistic vectors, one row per permutation."""
        perms = self._generate_permutations()
        chunks = chunked(perms, self.config.permutation_chunk_size)
        self.logger.info(
            f"Running {len(perms)} permutations in {len(chunks)} chunks "
            f"({self.n_workers} workers)..."
        )

        x = self.x

        def evaluate(chunk: np.ndarray) -> np.ndarray:
            d = d_statistic(x, np.asarray(chunk).T, s0)
            return np.sort(d, axis=0).T

        parts = run_in_pool(evaluate, chunks, self.n_workers, self.token, self.agent_name)
        return np.vstack(parts)

    def _evaluate_delta(
        self,
        scores: np.ndarray,
        sorted_scores: np.ndarray,
        expected: np.ndarray,
        null_sorted: np.ndarray,
        pi0: float,
        delta: float
    ) -> Dict[str, float]:
        cut_up, cut_down = cut_points(sorted_scores, expected, delta)
        called = int((scores >= cut_up).sum() + (scores <= cut_down).sum())
        # Median over permutations; see DESIGN.md for the choice over the mean
        false_calls = float(np.median(null_call_counts(null_sorted, cut_up, cut_down)))
        fdr = min(1.0, pi0 * false_calls / called) if called else 0.0
        return {
            "delta": delta,
            "cut_up": cut_up,
            "cut_down": cut_down,
            "called": called,
            "false_calls": false_calls,
            "fdr": fdr,
        }

    def _estimate_pi0(self, scores: np.ndarray, null_sorted: np.ndarray) -> float:
        q25, q75 = np.quantile(null_sorted, [0.25, 0.75])
        inside = ((scores > q25) & (scores < q75)).sum()
        return float(min(1.0, inside / (0.5 * len(scores))))

    def run(self) -> Dict[str, Any]:
        """Execute the permutation test."""
        feature_ids = self.context.matrix.feature_ids
        diff, s = group_moments(self.x, self.labels)
        s0 = estimate_s0(s, self.config.s0_percentile)
        self.logger.info(f"s0 = {s0:.4g} ({self.config.s0_percentile:g}th percentile of s)")

        scores = d_statistic(self.x, self.labels[:, None], s0)[:, 0]
        self.checkpoint()

        null_sorted = self._permutation_null(s0)
        expected = null_sorted.mean(axis=0)

        order = np.argsort(scores, kind="mergesort")
        sorted_scores = scores[order]
        pi0 = self._estimate_pi0(scores, null_sorted)
        self.logger.info(f"pi0 = {pi0:.3f}")

        # Delta table over a grid up to the largest observed distance
        max_distance = float(np.abs(sorted_scores - expected).max())
        grid_size = self.config.delta_grid_size
        grid = np.linspace(max_distance / grid_size, max_distance, grid_size) if max_distance > 0 else np.array([0.0])
        table_rows = [
            self._evaluate_delta(scores, sorted_scores, expected, null_sorted, pi0, float(d))
            for d in grid
        ]
        delta_table = pd.DataFrame(table_rows)

        delta = self._choose_delta(delta_table)
        chosen = self._evaluate_delta(scores, sorted_scores, expected, null_sorted, pi0, delta)

        up = scores >= chosen["cut_up"]
        down = scores <= chosen["cut_down"]
        direction = np.where(up, "up", np.where(down, "down", "none"))

        q_values = np.ones(len(scores))
        for row in table_rows:
            called = (scores >= row["cut_up"]) | (scores <= row["cut_down"])
            q_values[called] = np.minimum(q_values[called], row["fdr"])

        expected_by_feature = np.empty_like(expected)
        expected_by_feature[order] = expected

        case = self.labels == 1
        table = pd.DataFrame({
            "score": scores,
            "mean_case": self.x[:, case].mean(axis=1),
            "mean_control": self.x[:, ~case].mean(axis=1),
            "diff": diff,
            "sd": s,
            "expected": expected_by_feature,
            "distance": scores - expected_by_feature,
            "direction": direction,
            "significant": up | down,
            "q_value": q_values,
        }, index=pd.Index(feature_ids, name="feature_id"))

        result = DEResult(
            table=table,
            delta=delta,
            cut_up=chosen["cut_up"],
            cut_down=chosen["cut_down"],
            s0=s0,
            false_discoveries=chosen["false_calls"],
            pi0=pi0,
            fdr=chosen["fdr"],
            n_permutations=len(null_sorted),
            delta_table=delta_table,
        )

        # Save outputs
        self.save_csv(table.reset_index(), "deg_all_results.csv")
        significant = table[table["significant"]].sort_values("score", ascending=False)
        self.save_csv(significant.reset_index()[["feature_id", "score", "diff", "q_value", "direction"]],
                      "deg_significant.csv")
        self.save_csv(delta_table, "delta_table.csv")

        up_count = int(up.sum())
        down_count = int(down.sum())
        self.logger.info(f"DEG Analysis Complete:")
        self.logger.info(f"  Total features analyzed: {len(table)}")
        self.logger.info(f"  Delta: {delta:.4f}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")
        self.logger.info(f"  Median false calls: {chosen['false_calls']:.1f} (FDR {chosen['fdr']:.4f})")

        self.summary = {
            "total_features": len(table),
            "n_permutations": len(null_sorted),
            "s0": s0,
            "delta": delta,
            "up_count": up_count,
            "down_count": down_count,
            "false_discoveries": chosen["false_calls"],
            "fdr": chosen["fdr"],
            "pi0": pi0,
        }
        return {"de_result": result}

    def _choose_delta(self, delta_table: pd.DataFrame) -> float:
        if self.config.delta is not None:
            return float(self.config.delta)

        target = self.config.target_fdr
        eligible = delta_table[(delta_table["called"] > 0) & (delta_table["fdr"] <= target)]
        if len(eligible) == 0:
            self.logger.warning(f"No delta reaches FDR <= {target}; using the largest grid delta")
            return float(delta_table["delta"].max())

        delta = float(eligible["delta"].min())
        self.logger.info(f"Selected delta {delta:.4f} for target FDR {target}")
        return delta

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate DEG outputs."""
        result: DEResult = artifacts["de_result"]

        if not np.isfinite(result.table["score"]).all():
            self.logger.error("Non-finite statistics found")
            return False

        if (result.table["significant"] != (result.table["direction"] != "none")).any():
            self.logger.error("Significance flags disagree with directions")
            return False

        if result.n_significant == 0:
            self.logger.warning("No significant features found (this may be expected)")

        return True
