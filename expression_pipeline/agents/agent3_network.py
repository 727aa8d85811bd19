"""
Agent 3: Weighted Co-expression Network and Module Detection

Signed weighted co-expression network over the refined candidate features,
topological overlap, average-linkage dendrogram, dynamic branch cut and
eigengene-based module merging.

Input (PipelineContext):
- matrix
- candidates: From Agent 2

Output:
- network, partition: CoexpressionNetwork and ModulePartition artifacts
- module_assignment.csv: feature -> module (before and after merging)
- module_sizes.csv: features and variance explained per module
- meta_agent3_network.json: Execution metadata
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, to_tree

from ..artifacts import UNASSIGNED, CoexpressionNetwork, Module, ModulePartition
from ..utils.base_agent import BaseAgent
from ..utils.concurrency import block_ranges, chunked, run_in_pool
from ..utils.errors import InputError, NumericalError, ResourceError
from .agent4_module_trait import module_eigengene

# WGCNA standard colour sequence
MODULE_COLORS = [
    "turquoise", "blue", "brown", "yellow", "green", "red", "black", "pink",
    "magenta", "purple", "greenyellow", "tan", "salmon", "cyan", "midnightblue",
    "lightcyan", "grey60", "lightgreen", "lightyellow", "royalblue", "darkred",
    "darkgreen", "darkturquoise", "darkgrey", "orange", "darkorange", "white",
    "skyblue", "saddlebrown", "steelblue", "paleturquoise", "violet",
    "darkolivegreen", "darkmagenta",
]


def module_color(index: int) -> str:
    if index < len(MODULE_COLORS):
        return MODULE_COLORS[index]
    return f"module{index + 1}"


def normalized_rows(x: np.ndarray) -> np.ndarray:
    """Center each row and scale it to unit norm, so that Z @ Z.T is Pearson r."""
    centered = x - x.mean(axis=1, keepdims=True)
    return centered / np.sqrt((centered ** 2).sum(axis=1, keepdims=True))


def condensed_dissimilarity(tom: np.ndarray) -> np.ndarray:
    """Upper triangle of 1 - TOM in the row-major order scipy expects."""
    n = tom.shape[0]
    out = np.empty(n * (n - 1) // 2)
    pos = 0
    for i in range(n - 1):
        row = 1.0 - np.asarray(tom[i, i + 1:])
        out[pos:pos + len(row)] = row
        pos += len(row)
    return np.clip(out, 0.0, None)


def symmetrize(mat: np.ndarray, ranges: Sequence[Tuple[int, int]]) -> None:
    """Average mat with its transpose in place, one block pair at a time."""
    for bi, (a, b) in enumerate(ranges):
        for c, d in ranges[bi:]:
            avg = (np.asarray(mat[a:b, c:d]) + np.asarray(mat[c:d, a:b]).T) / 2.0
            mat[a:b, c:d] = avg
            mat[c:d, a:b] = avg.T


def dynamic_cut(
    Z: np.ndarray,
    min_size: int,
    cut_height: Optional[float] = None,
    split_sensitivity: float = 0.25,
) -> Tuple[List[List[int]], List[int]]:
    """Top-down dynamic branch cut of an average-linkage dendrogram.

    Branches above ``cut_height`` are always split. Below it a branch is split
    only when both children hold at least ``min_size`` leaves and the branch
    sits at least ``split_sensitivity`` x (height range) above its taller
    child. Branches smaller than ``min_size`` are left unassigned.

    Returns (modules as lists of leaf indices, unassigned leaf indices).
    """
    heights = Z[:, 2]
    h_min, h_max = float(heights.min()), float(heights.max())
    span = h_max - h_min
    if cut_height is None:
        cut_height = h_min + 0.99 * span
    min_gap = split_sensitivity * span

    modules: List[List[int]] = []
    unassigned: List[int] = []

    stack = [to_tree(Z)]
    while stack:
        node = stack.pop()
        if node.get_count() < min_size:
            unassigned.extend(node.pre_order())
            continue
        if node.is_leaf():
            modules.append([node.get_id()])
            continue

        left, right = node.get_left(), node.get_right()
        if node.dist > cut_height:
            stack.extend([right, left])
            continue

        gap = node.dist - max(left.dist, right.dist)
        if left.get_count() >= min_size and right.get_count() >= min_size and gap > min_gap:
            stack.extend([right, left])
            continue

        modules.append(sorted(node.pre_order()))

    return modules, sorted(unassigned)


class NetworkAgent(BaseAgent):
    """Agent for network construction and module detection."""

    def __init__(self, output_dir, context, token=None):
        super().__init__("agent3_network", output_dir, context, token)
        self.scratch_dir = self.output_dir / "scratch"

    def validate_inputs(self) -> bool:
        """Validate candidate features from Agent 2."""
        self.check_sample_alignment()

        candidates = self.context.candidates
        if candidates is None:
            self.logger.error("Candidate feature set from agent2_importance is missing")
            return False

        missing = [f for f in candidates.features if f not in set(self.context.matrix.feature_ids)]
        if missing:
            self.logger.error(f"{len(missing)} candidate features not in the matrix (e.g. {missing[:5]})")
            return False

        if len(candidates) < 2:
            raise InputError(
                f"network needs at least 2 candidate features, got {len(candidates)}",
                stage=self.agent_name,
            )

        self.logger.info(f"Candidate features: {len(candidates.up)} up, {len(candidates.down)} down")
        return True

    # ------------------------------------------------------------------
    # Network construction
    # ------------------------------------------------------------------

    def _drop_constant_features(self, values: pd.DataFrame) -> Tuple[pd.DataFrame, List[str]]:
        sd = values.std(axis=1, ddof=1)
        constant = sd.index[~np.isfinite(sd) | (sd <= np.finfo(float).eps)].tolist()
        for feature in constant:
            self.record_numerical_issue(
                NumericalError(f"feature {feature} has zero variance; excluded from network",
                               stage=self.agent_name)
            )
        kept = values.drop(index=constant)
        if len(kept) < 2:
            raise InputError(
                f"fewer than 2 features with non-zero variance ({len(kept)} left)",
                stage=self.agent_name,
            )
        return kept, constant

    def _allocate(self, name: str, n: int, on_disk: bool) -> np.ndarray:
        if not on_disk:
            return np.empty((n, n), dtype=float)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        path = self.scratch_dir / f"{name}.npy"
        return np.lib.format.open_memmap(path, mode="w+", dtype=float, shape=(n, n))

    def _fill_blocks(
        self,
        targets: Sequence[np.ndarray],
        compute: Callable[[Tuple[int, int]], Tuple[np.ndarray, ...]],
        ranges: Sequence[Tuple[int, int]],
    ) -> None:
        """Compute row blocks on the pool and assign them into the targets.

        At most ``n_workers`` blocks are held in memory at a time.
        """
        for batch in chunked(list(ranges), self.n_workers):
            parts = run_in_pool(compute, batch, self.n_workers, self.token, self.agent_name)
            for (start, stop), blocks in zip(batch, parts):
                for target, block in zip(targets, blocks):
                    target[start:stop] = block

    def _build_matrices(self, x: np.ndarray, on_disk: bool) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        n = x.shape[0]
        beta = self.config.soft_power
        ranges = block_ranges(n, self.config.block_size)
        z = normalized_rows(x)

        correlation = self._allocate("correlation", n, on_disk)
        adjacency = self._allocate("adjacency", n, on_disk)
        tom = self._allocate("tom", n, on_disk)

        def correlation_block(rows: Tuple[int, int]):
            start, stop = rows
            cor = np.clip(z[start:stop] @ z.T, -1.0, 1.0)
            cor[np.arange(stop - start), np.arange(start, stop)] = 1.0
            return (cor,)

        self._fill_blocks([correlation], correlation_block, ranges)
        symmetrize(correlation, ranges)

        def adjacency_block(rows: Tuple[int, int]):
            start, stop = rows
            return (((1.0 + np.asarray(correlation[start:stop])) / 2.0) ** beta,)

        self._fill_blocks([adjacency], adjacency_block, ranges)
        self.logger.info(f"Adjacency computed (signed, beta = {beta:g})")

        # Connectivity without the self-loop
        k = np.asarray(adjacency.sum(axis=1)) - 1.0

        def tom_block(rows: Tuple[int, int]):
            start, stop = rows
            a_rows = np.asarray(adjacency[start:stop])
            # adjacency has a unit diagonal: (A @ A)_ij counts a_ij twice for i != j
            shared = a_rows @ np.asarray(adjacency) - 2.0 * a_rows
            denom = np.minimum(k[start:stop, None], k[None, :]) + 1.0 - a_rows
            block = np.clip((shared + a_rows) / denom, 0.0, 1.0)
            block[np.arange(stop - start), np.arange(start, stop)] = 1.0
            return (block,)

        self._fill_blocks([tom], tom_block, ranges)
        symmetrize(tom, ranges)
        self.logger.info(f"TOM computed in {len(ranges)} row blocks")

        return correlation, adjacency, tom

    # ------------------------------------------------------------------
    # Module detection
    # ------------------------------------------------------------------

    def _reassign(self, tom: np.ndarray, modules: List[List[int]], unassigned: List[int]) -> List[int]:
        threshold = self.config.reassign_threshold
        if threshold is None or not modules or not unassigned:
            return unassigned

        remaining = []
        for i in unassigned:
            row = np.asarray(tom[i])
            distances = [1.0 - row[members].mean() for members in modules]
            best = int(np.argmin(distances))
            if distances[best] <= threshold:
                modules[best].append(i)
            else:
                remaining.append(i)

        self.logger.info(f"Reassigned {len(unassigned) - len(remaining)} unassigned features")
        return remaining

    def _drop_degenerate_modules(
        self, x: np.ndarray, modules: List[List[int]], unassigned: List[int]
    ) -> List[List[int]]:
        """Modules whose eigengene cannot be computed go to grey."""
        kept = []
        for members in modules:
            try:
                module_eigengene(x[members])
            except NumericalError as e:
                self.record_numerical_issue(
                    NumericalError(f"module of {len(members)} features dropped: {e.detail}",
                                   stage=self.agent_name)
                )
                unassigned.extend(members)
                continue
            kept.append(members)
        return kept

    def _merge_modules(
        self, x: np.ndarray, modules: List[List[int]], labels: List[str]
    ) -> Tuple[List[List[int]], List[Tuple[str, str]]]:
        """Repeatedly merge the pair of modules with the most similar eigengenes."""
        threshold = 1.0 - self.config.merge_cut_height
        modules = [list(m) for m in modules]
        labels = list(labels)
        merged: List[Tuple[str, str]] = []

        while len(modules) > 1:
            eigengenes = np.vstack([module_eigengene(x[m])[0] for m in modules])
            cor = np.corrcoef(eigengenes)
            np.fill_diagonal(cor, -np.inf)
            i, j = np.unravel_index(int(np.argmax(cor)), cor.shape)
            if cor[i, j] <= threshold:
                break

            keep, absorb = (i, j) if len(modules[i]) >= len(modules[j]) else (j, i)
            self.logger.info(
                f"  Merging {labels[absorb]} into {labels[keep]} "
                f"(eigengene r = {cor[i, j]:.3f})"
            )
            merged.append((labels[absorb], labels[keep]))
            modules[keep] = modules[keep] + modules[absorb]
            del modules[absorb]
            del labels[absorb]
            self.checkpoint()

        return modules, merged

    def _label_by_size(self, modules: List[List[int]]) -> List[Tuple[str, List[int]]]:
        ordered = sorted(modules, key=lambda m: (-len(m), min(m)))
        return [(module_color(i), sorted(m)) for i, m in enumerate(ordered)]

    def run(self) -> Dict[str, Any]:
        """Execute network construction and module detection."""
        candidates = self.context.candidates
        values = self.context.matrix.values.loc[candidates.features].astype(float)
        values, excluded = self._drop_constant_features(values)

        feature_ids = tuple(str(f) for f in values.index)
        sample_ids = [str(s) for s in values.columns]
        n = len(feature_ids)
        x = values.to_numpy()

        on_disk = False
        if n > self.config.max_dense_features:
            if not self.config.blockwise_fallback:
                raise ResourceError(
                    f"{n} features exceed the dense ceiling of {self.config.max_dense_features}; "
                    f"enable blockwise_fallback for disk-backed computation",
                    stage=self.agent_name,
                )
            on_disk = True
            self.logger.warning(f"{n} features: using disk-backed matrices under {self.scratch_dir}")

        self.logger.info(f"Building network over {n} features ({len(excluded)} excluded)...")
        correlation, adjacency, tom = self._build_matrices(x, on_disk)
        self.checkpoint()

        Z = linkage(condensed_dissimilarity(tom), method="average")
        modules, unassigned = dynamic_cut(
            Z,
            min_size=self.config.min_module_size,
            cut_height=self.config.cut_height,
            split_sensitivity=self.config.split_sensitivity,
        )
        self.logger.info(f"Dynamic cut: {len(modules)} branches, {len(unassigned)} unassigned")
        unassigned = self._reassign(tom, modules, unassigned)

        modules = self._drop_degenerate_modules(x, modules, unassigned)
        dynamic = self._label_by_size(modules)
        dynamic_labels = {i: label for label, members in dynamic for i in members}

        merged_members, merged = self._merge_modules(
            x, [m for _, m in dynamic], [label for label, _ in dynamic]
        )
        final = self._label_by_size(merged_members)

        module_objects = []
        for label, members in final:
            eigengene, var = module_eigengene(x[members])
            module_objects.append(Module(
                label=label,
                features=tuple(feature_ids[i] for i in members),
                eigengene=pd.Series(eigengene, index=sample_ids, name=label),
                variance_explained=var,
            ))

        assignment = pd.Series(UNASSIGNED, index=pd.Index(feature_ids, name="feature_id"), name="module")
        for module in module_objects:
            assignment.loc[list(module.features)] = module.label
        unassigned_ids = tuple(feature_ids[i] for i in sorted(set(unassigned)))

        network = CoexpressionNetwork(
            feature_ids=feature_ids,
            correlation=correlation,
            adjacency=adjacency,
            tom=tom,
            soft_power=self.config.soft_power,
            excluded_features=tuple(excluded),
            linkage=Z,
            blockwise=on_disk,
        )
        partition = ModulePartition(
            modules=tuple(module_objects),
            assignment=assignment,
            unassigned=unassigned_ids,
            merged=tuple(merged),
        )

        # Save outputs
        assignment_df = pd.DataFrame({
            "feature_id": list(feature_ids),
            "module": assignment.to_numpy(),
            "dynamic_module": [dynamic_labels.get(i, UNASSIGNED) for i in range(n)],
            "direction": [candidates.direction_of(f) for f in feature_ids],
        })
        self.save_csv(assignment_df, "module_assignment.csv")

        sizes_df = pd.DataFrame(
            [{"module": m.label, "size": m.size, "variance_explained": m.variance_explained}
             for m in module_objects]
            + [{"module": UNASSIGNED, "size": len(unassigned_ids), "variance_explained": np.nan}],
        )
        self.save_csv(sizes_df, "module_sizes.csv")

        self.logger.info("Module Detection Complete:")
        self.logger.info(f"  Modules: {len(module_objects)} ({', '.join(partition.labels) or 'none'})")
        self.logger.info(f"  Unassigned: {len(unassigned_ids)}")
        self.logger.info(f"  Merges: {len(merged)}")

        self.summary = {
            "n_features": n,
            "excluded_features": list(excluded),
            "soft_power": self.config.soft_power,
            "blockwise": on_disk,
            "module_sizes": {m.label: m.size for m in module_objects},
            "unassigned": len(unassigned_ids),
            "merged": [list(pair) for pair in merged],
        }
        return {"network": network, "partition": partition}

    def _check_weight_matrix(self, name: str, mat: np.ndarray) -> bool:
        for start, stop in block_ranges(mat.shape[0], self.config.block_size):
            rows = np.asarray(mat[start:stop])
            if rows.min() < 0.0 or rows.max() > 1.0:
                self.logger.error(f"{name} outside [0, 1]")
                return False
            if not np.allclose(rows, np.asarray(mat[:, start:stop]).T):
                self.logger.error(f"{name} is not symmetric")
                return False
            if not np.allclose(rows[np.arange(stop - start), np.arange(start, stop)], 1.0):
                self.logger.error(f"{name} diagonal is not 1")
                return False
        return True

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate network matrices and module sizes."""
        network: CoexpressionNetwork = artifacts["network"]
        partition: ModulePartition = artifacts["partition"]

        if not self._check_weight_matrix("adjacency", network.adjacency):
            return False
        if not self._check_weight_matrix("TOM", network.tom):
            return False

        for module in partition.modules:
            if module.size < self.config.min_module_size:
                self.logger.error(f"Module {module.label} has {module.size} < {self.config.min_module_size} features")
                return False

        if set(partition.assignment.index) != set(network.feature_ids):
            self.logger.error("Module assignment does not cover the network")
            return False

        return True
