"""
Agent 6: Network Export

Writes the co-expression network as Cytoscape-style edge and node tables.

Input (PipelineContext):
- network, partition: From Agent 3
- trait: From Agent 4 (hub flags, optional)
- candidates: From Agent 2 (direction per feature)

Output:
- exports: {"edges": path, "nodes": path}
- cytoscape_edges.tsv: fromNode, toNode, weight, direction, fromAltName, toAltName
- cytoscape_nodes.tsv: nodeName, altName, module, direction, degree, is_hub
- meta_agent6_export.json: Execution metadata
"""

from typing import Any, Dict, Optional

import networkx as nx
import numpy as np
import pandas as pd

from ..artifacts import UNASSIGNED, CoexpressionNetwork
from ..utils.base_agent import BaseAgent
from ..utils.concurrency import block_ranges
from ..utils.io import SymbolLookup

EDGE_COLUMNS = ["fromNode", "toNode", "weight", "direction", "fromAltName", "toAltName"]
NODE_COLUMNS = ["nodeName", "altName", "module", "direction", "degree", "is_hub"]


class ExportAgent(BaseAgent):
    """Agent for Cytoscape edge/node list export."""

    def __init__(self, output_dir, context, token=None, symbol_lookup: Optional[SymbolLookup] = None):
        super().__init__("agent6_export", output_dir, context, token)
        self.symbol_lookup = symbol_lookup

    def validate_inputs(self) -> bool:
        """Validate network from Agent 3."""
        if self.context.network is None or self.context.partition is None:
            self.logger.error("Network from agent3_network is missing")
            return False

        self.logger.info(
            f"Exporting {self.context.network.size} nodes "
            f"({self.config.export_weight} >= {self.config.export_threshold})"
        )
        return True

    def _alt_name(self, feature: str) -> str:
        if self.symbol_lookup is None:
            return ""
        return self.symbol_lookup(feature) or ""

    def _direction(self, feature: str) -> str:
        if self.context.candidates is None:
            return "none"
        return self.context.candidates.direction_of(feature)

    def _edge_table(self, network: CoexpressionNetwork) -> pd.DataFrame:
        """Upper-triangle pairs whose weight reaches the threshold."""
        weights = network.tom if self.config.export_weight == "tom" else network.adjacency
        threshold = self.config.export_threshold
        ids = np.asarray(network.feature_ids, dtype=object)

        rows_i, rows_j, values = [], [], []
        for start, stop in block_ranges(network.size, self.config.block_size):
            block = np.asarray(weights[start:stop])
            i, j = np.nonzero(block >= threshold)
            i = i + start
            upper = j > i
            rows_i.append(i[upper])
            rows_j.append(j[upper])
            values.append(block[i[upper] - start, j[upper]])
            self.checkpoint()

        i = np.concatenate(rows_i) if rows_i else np.empty(0, dtype=int)
        j = np.concatenate(rows_j) if rows_j else np.empty(0, dtype=int)
        w = np.concatenate(values) if values else np.empty(0)

        correlation = np.asarray(network.correlation[i, j], dtype=float)
        edges = pd.DataFrame({
            "fromNode": ids[i],
            "toNode": ids[j],
            "weight": w,
            "direction": np.where(correlation >= 0, "positive", "negative"),
        }, columns=EDGE_COLUMNS[:4])
        edges["fromAltName"] = [self._alt_name(f) for f in edges["fromNode"]]
        edges["toAltName"] = [self._alt_name(f) for f in edges["toNode"]]
        return edges.sort_values("weight", ascending=False, kind="mergesort").reset_index(drop=True)

    def _node_table(self, network: CoexpressionNetwork, edges: pd.DataFrame) -> pd.DataFrame:
        graph = nx.Graph()
        graph.add_nodes_from(network.feature_ids)
        graph.add_weighted_edges_from(edges[["fromNode", "toNode", "weight"]].itertuples(index=False))

        hubs = set()
        if self.context.trait is not None:
            for features in self.context.trait.hub_features.values():
                hubs.update(features)

        assignment = self.context.partition.assignment
        return pd.DataFrame({
            "nodeName": list(network.feature_ids),
            "altName": [self._alt_name(f) for f in network.feature_ids],
            "module": [assignment.get(f, UNASSIGNED) for f in network.feature_ids],
            "direction": [self._direction(f) for f in network.feature_ids],
            "degree": [graph.degree(f) for f in network.feature_ids],
            "is_hub": [f in hubs for f in network.feature_ids],
        }, columns=NODE_COLUMNS)

    def run(self) -> Dict[str, Any]:
        """Execute export."""
        network = self.context.network

        edges = self._edge_table(network)
        nodes = self._node_table(network, edges)

        edges_path = self.save_csv(edges, "cytoscape_edges.tsv", sep="\t")
        nodes_path = self.save_csv(nodes, "cytoscape_nodes.tsv", sep="\t")

        self.logger.info(f"Network Export Complete:")
        self.logger.info(f"  Edges: {len(edges)}")
        self.logger.info(f"  Nodes: {len(nodes)} ({int(nodes['is_hub'].sum())} hubs)")

        self.summary = {
            "weight": self.config.export_weight,
            "threshold": self.config.export_threshold,
            "edges": len(edges),
            "nodes": len(nodes),
        }
        return {"exports": {"edges": str(edges_path), "nodes": str(nodes_path)}}

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate exported tables."""
        edges = pd.read_csv(artifacts["exports"]["edges"], sep="\t", dtype={"fromNode": str, "toNode": str},
                            keep_default_na=False)
        nodes = pd.read_csv(artifacts["exports"]["nodes"], sep="\t", dtype={"nodeName": str},
                            keep_default_na=False)

        if (edges["weight"] < self.config.export_threshold).any():
            self.logger.error("Edge below export threshold")
            return False

        endpoints = set(edges["fromNode"]) | set(edges["toNode"])
        if not endpoints <= set(nodes["nodeName"]):
            self.logger.error("Edge endpoint missing from node list")
            return False

        return True
