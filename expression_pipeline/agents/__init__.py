"""
Expression Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 1: DEG Analysis (permutation test)
- Agent 2: Feature Importance (random forest)
- Agent 3: Co-expression Network & Modules
- Agent 4: Module-Trait Association
- Agent 5: Gene-Set Enrichment (GSEA prerank)
- Agent 6: Network Export
"""

from .agent1_deg import DEGAgent
from .agent2_importance import ImportanceAgent
from .agent3_network import NetworkAgent
from .agent4_module_trait import ModuleTraitAgent
from .agent5_enrichment import EnrichmentAgent
from .agent6_export import ExportAgent

__all__ = [
    "DEGAgent",
    "ImportanceAgent",
    "NetworkAgent",
    "ModuleTraitAgent",
    "EnrichmentAgent",
    "ExportAgent",
]
