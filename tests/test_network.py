"""
Expression Pipeline - Agent 3 (co-expression network) Unit Tests
"""
import numpy as np
import pandas as pd
import pytest
from scipy.cluster.hierarchy import linkage

from conftest import make_context
from expression_pipeline.agents.agent3_network import (
    NetworkAgent,
    condensed_dissimilarity,
    dynamic_cut,
    module_color,
)
from expression_pipeline.artifacts import UNASSIGNED, CandidateFeatureSet, ExpressionMatrix
from expression_pipeline.utils.errors import InputError, ResourceError


def naive_tom(adjacency: np.ndarray) -> np.ndarray:
    """Direct double-loop topological overlap."""
    a = adjacency.copy()
    np.fill_diagonal(a, 0.0)
    k = a.sum(axis=1)
    n = len(a)
    tom = np.eye(n)
    for i in range(n):
        for j in range(n):
            if i == j:
                continue
            shared = sum(a[i, u] * a[u, j] for u in range(n) if u not in (i, j))
            tom[i, j] = (shared + a[i, j]) / (min(k[i], k[j]) + 1.0 - a[i, j])
    return tom


@pytest.fixture
def network_context(two_cluster_dataset, fast_config):
    matrix, annotation, candidates = two_cluster_dataset
    fast_config.soft_power = 7.0
    fast_config.min_module_size = 5
    return make_context(fast_config, matrix, annotation, candidates=candidates)


@pytest.fixture
def random_context(small_dataset, fast_config):
    matrix, annotation = small_dataset
    features = matrix.feature_ids[:12]
    candidates = CandidateFeatureSet(up=tuple(features[:6]), down=tuple(features[6:]))
    return make_context(fast_config, matrix, annotation, candidates=candidates)


class TestNetworkMatrices:
    """Adjacency and TOM properties."""

    def test_adjacency_is_signed_power(self, random_context, temp_output):
        network = NetworkAgent(temp_output, random_context).execute()["network"]
        x = random_context.matrix.values.loc[list(network.feature_ids)].to_numpy()
        expected = ((1.0 + np.corrcoef(x)) / 2.0) ** random_context.config.soft_power
        np.testing.assert_allclose(network.adjacency, expected, atol=1e-10)

    def test_tom_matches_direct_formula(self, random_context, temp_output):
        network = NetworkAgent(temp_output, random_context).execute()["network"]
        np.testing.assert_allclose(network.tom, naive_tom(np.asarray(network.adjacency)), atol=1e-10)

    def test_symmetric_unit_diagonal_bounded(self, random_context, temp_output):
        network = NetworkAgent(temp_output, random_context).execute()["network"]
        for mat in (network.adjacency, network.tom):
            mat = np.asarray(mat)
            np.testing.assert_array_equal(mat, mat.T)
            np.testing.assert_allclose(np.diag(mat), 1.0)
            assert mat.min() >= 0.0
            assert mat.max() <= 1.0

    def test_condensed_matches_squareform_order(self):
        tom = np.array([[1.0, 0.2, 0.4], [0.2, 1.0, 0.6], [0.4, 0.6, 1.0]])
        np.testing.assert_allclose(condensed_dissimilarity(tom), [0.8, 0.6, 0.4])

    def test_dense_ceiling(self, network_context, temp_output):
        network_context.config.max_dense_features = 5
        with pytest.raises(ResourceError):
            NetworkAgent(temp_output, network_context).execute()

    def test_blockwise_fallback_matches_dense(self, network_context, temp_output):
        dense = NetworkAgent(temp_output / "dense", network_context).execute()["network"]

        network_context.config.max_dense_features = 5
        network_context.config.blockwise_fallback = True
        network_context.config.block_size = 3
        blockwise = NetworkAgent(temp_output / "disk", network_context).execute()["network"]

        assert blockwise.blockwise
        assert (temp_output / "disk" / "scratch" / "tom.npy").exists()
        np.testing.assert_allclose(np.asarray(blockwise.tom), dense.tom, atol=1e-12)


class TestDynamicCut:
    """Dendrogram branch cutting."""

    @pytest.fixture
    def three_groups(self):
        rng = np.random.default_rng(3)
        points = np.concatenate([
            rng.normal(0.0, 0.1, 6),
            rng.normal(10.0, 0.1, 6),
            [100.0, 100.1],
        ])[:, None]
        return linkage(points, method="average")

    def test_small_branch_unassigned(self, three_groups):
        modules, unassigned = dynamic_cut(three_groups, min_size=5, split_sensitivity=0.25)
        assert unassigned == [12, 13]
        assert [sorted(m) for m in modules] == [list(range(12))]

    def test_sensitive_split(self, three_groups):
        modules, unassigned = dynamic_cut(three_groups, min_size=5, split_sensitivity=0.05)
        assert sorted(sorted(m) for m in modules) == [list(range(6)), list(range(6, 12))]
        assert unassigned == [12, 13]

    def test_cut_height_forces_split(self, three_groups):
        modules, _ = dynamic_cut(three_groups, min_size=5, cut_height=5.0, split_sensitivity=1.0)
        assert len(modules) == 2
        assert all(len(m) >= 5 for m in modules)

    def test_colors(self):
        assert module_color(0) == "turquoise"
        assert module_color(1) == "blue"
        assert module_color(100) == "module101"


class TestNetworkAgent:
    """Test cases for Agent 3 - module detection."""

    def test_scenario_two_modules(self, network_context, temp_output):
        partition = NetworkAgent(temp_output, network_context).execute()["partition"]

        features = network_context.matrix.feature_ids
        cor = np.corrcoef(network_context.matrix.as_array())
        assert 0.0 < cor[:5, 5:].mean() < 0.25
        assert cor[:5, :5][np.triu_indices(5, k=1)].mean() > 0.8

        assert partition.labels == ["turquoise", "blue"]
        assert set(partition.module("turquoise").features) == set(features[:5])
        assert set(partition.module("blue").features) == set(features[5:])
        assert partition.unassigned == ()
        assert (partition.assignment != UNASSIGNED).all()

    def test_modules_meet_min_size(self, random_context, temp_output):
        partition = NetworkAgent(temp_output, random_context).execute()["partition"]
        for module in partition.modules:
            assert module.size >= random_context.config.min_module_size
        assert set(partition.assignment.index) == set(random_context.candidates.features)

    def test_eigengenes_indexed_by_sample(self, network_context, temp_output):
        partition = NetworkAgent(temp_output, network_context).execute()["partition"]
        for module in partition.modules:
            assert list(module.eigengene.index) == network_context.matrix.sample_ids
            assert 0.0 < module.variance_explained <= 1.0

    def test_outputs_written(self, network_context, temp_output):
        NetworkAgent(temp_output, network_context).execute()
        assignment = pd.read_csv(temp_output / "module_assignment.csv")
        sizes = pd.read_csv(temp_output / "module_sizes.csv")

        assert list(assignment.columns) == ["feature_id", "module", "dynamic_module", "direction"]
        assert set(sizes["module"]) == {"turquoise", "blue", UNASSIGNED}

    def test_zero_variance_feature_excluded(self, network_context, temp_output):
        values = network_context.matrix.values.copy()
        values.loc["CONST"] = 5.0
        candidates = CandidateFeatureSet(
            up=network_context.candidates.up + ("CONST",),
            down=network_context.candidates.down,
        )
        context = network_context.with_artifacts(matrix=ExpressionMatrix(values), candidates=candidates)

        agent = NetworkAgent(temp_output, context)
        network = agent.execute()["network"]
        assert network.excluded_features == ("CONST",)
        assert "CONST" not in network.feature_ids
        assert any("CONST" in w for w in agent.warnings)

    def test_too_few_features(self, network_context, temp_output):
        values = network_context.matrix.values.copy()
        values.loc["CONST"] = 5.0
        candidates = CandidateFeatureSet(up=("CONST", network_context.matrix.feature_ids[0]), down=())
        context = network_context.with_artifacts(matrix=ExpressionMatrix(values), candidates=candidates)

        with pytest.raises(InputError):
            NetworkAgent(temp_output, context).execute()

    def test_similar_modules_merge(self, network_context, temp_output):
        rng = np.random.default_rng(5)
        factor = rng.normal(size=40)
        x = np.vstack([factor + 0.2 * rng.normal(size=40) for _ in range(10)])

        agent = NetworkAgent(temp_output, network_context)
        modules, merged = agent._merge_modules(
            x, [list(range(5)), list(range(5, 10))], ["turquoise", "blue"]
        )
        agent.close_logging()

        assert len(modules) == 1
        assert sorted(modules[0]) == list(range(10))
        assert merged == [("blue", "turquoise")]
