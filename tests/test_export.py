"""
Expression Pipeline - Agent 6 (network export) Unit Tests
"""
import numpy as np
import pandas as pd
import pytest

from conftest import make_context
from expression_pipeline.artifacts import CandidateFeatureSet, ExpressionMatrix
from expression_pipeline.agents.agent3_network import NetworkAgent
from expression_pipeline.agents.agent4_module_trait import ModuleTraitAgent
from expression_pipeline.agents.agent6_export import EDGE_COLUMNS, NODE_COLUMNS, ExportAgent


@pytest.fixture
def export_context(two_cluster_dataset, fast_config, tmp_path):
    matrix, annotation, candidates = two_cluster_dataset
    fast_config.soft_power = 7.0
    fast_config.hub_features_per_module = 2
    context = make_context(fast_config, matrix, annotation, candidates=candidates)
    context = context.with_artifacts(**NetworkAgent(tmp_path / "network", context).execute())
    return context.with_artifacts(**ModuleTraitAgent(tmp_path / "trait", context).execute())


def read_tables(exports):
    edges = pd.read_csv(exports["edges"], sep="\t", dtype={"fromNode": str, "toNode": str},
                        keep_default_na=False)
    nodes = pd.read_csv(exports["nodes"], sep="\t", dtype={"nodeName": str}, keep_default_na=False)
    return edges, nodes


class TestExportAgent:
    """Test cases for Agent 6 - Network Export."""

    def test_edges_above_threshold(self, export_context, temp_output):
        exports = ExportAgent(temp_output, export_context).execute()["exports"]
        edges, nodes = read_tables(exports)

        assert list(edges.columns) == EDGE_COLUMNS
        assert list(nodes.columns) == NODE_COLUMNS
        assert (edges["weight"] >= export_context.config.export_threshold).all()
        assert set(edges["fromNode"]) | set(edges["toNode"]) <= set(nodes["nodeName"])

    def test_edge_count_matches_tom(self, export_context, temp_output):
        exports = ExportAgent(temp_output, export_context).execute()["exports"]
        edges, _ = read_tables(exports)

        tom = np.asarray(export_context.network.tom)
        upper = np.triu(tom >= export_context.config.export_threshold, k=1)
        assert len(edges) == int(upper.sum())

    def test_node_attributes(self, export_context, temp_output):
        lookup = {f: f"SYM_{f}" for f in export_context.matrix.feature_ids[:3]}.get
        exports = ExportAgent(temp_output, export_context, symbol_lookup=lookup).execute()["exports"]
        edges, nodes = read_tables(exports)
        nodes = nodes.set_index("nodeName")

        features = export_context.matrix.feature_ids
        assert nodes.loc[features[0], "altName"] == f"SYM_{features[0]}"
        assert nodes.loc[features[9], "altName"] == ""
        assert nodes.loc[features[0], "direction"] == "up"
        assert nodes.loc[features[9], "direction"] == "down"
        assert nodes.loc[features[0], "module"] == export_context.partition.assignment[features[0]]

        degree = pd.concat([edges["fromNode"], edges["toNode"]]).value_counts()
        for node, row in nodes.iterrows():
            assert row["degree"] == degree.get(node, 0)

        hubs = {f for feats in export_context.trait.hub_features.values() for f in feats}
        assert set(nodes.index[nodes["is_hub"]]) == hubs

    def test_adjacency_weight_and_empty_export(self, export_context, temp_output):
        config = export_context.config
        config.export_weight = "adjacency"
        config.export_threshold = 1.0
        exports = ExportAgent(temp_output, export_context).execute()["exports"]
        edges, nodes = read_tables(exports)

        assert len(edges) == 0
        assert len(nodes) == export_context.network.size
        assert (nodes["degree"] == 0).all()

    def test_edge_direction_from_correlation(self, export_context, temp_output):
        export_context.config.export_threshold = 0.0
        exports = ExportAgent(temp_output, export_context).execute()["exports"]
        edges, _ = read_tables(exports)

        network = export_context.network
        for row in edges.itertuples(index=False):
            r = network.correlation[network.index_of(row.fromNode), network.index_of(row.toNode)]
            assert row.direction == ("positive" if r >= 0 else "negative")

    def test_missing_value_like_ids_survive_readback(self, two_cluster_dataset, fast_config, tmp_path):
        matrix, annotation, candidates = two_cluster_dataset
        renamed = {matrix.feature_ids[0]: "NA", matrix.feature_ids[5]: "null"}
        matrix = ExpressionMatrix(matrix.values.rename(index=renamed))
        candidates = CandidateFeatureSet(
            up=tuple(renamed.get(f, f) for f in candidates.up),
            down=tuple(renamed.get(f, f) for f in candidates.down),
        )
        fast_config.soft_power = 7.0
        fast_config.export_threshold = 0.0
        context = make_context(fast_config, matrix, annotation, candidates=candidates)
        context = context.with_artifacts(**NetworkAgent(tmp_path / "network", context).execute())
        context = context.with_artifacts(**ModuleTraitAgent(tmp_path / "trait", context).execute())

        exports = ExportAgent(tmp_path / "export", context).execute()["exports"]
        edges, nodes = read_tables(exports)

        assert {"NA", "null"} <= set(nodes["nodeName"])
        assert "NA" in set(edges["fromNode"]) | set(edges["toNode"])
