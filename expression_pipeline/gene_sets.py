"""
Gene-set collections and sources.

Collections are a closed set of MSigDB category/subcategory pairs. Config
strings such as "C2:CP:KEGG" are resolved through a lookup table so an
unknown pair is rejected when the pipeline starts, not half-way through a
run.

A gene-set source is any callable ``(category, subcategory) -> list of
GeneSet`` that returns None (or raises ExternalLookupError) when the
collection is unavailable.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from gseapy.parser import read_gmt

from .artifacts import GeneSet
from .utils.errors import ConfigurationError, ExternalLookupError

logger = logging.getLogger(__name__)

GeneSetSource = Callable[[str, Optional[str]], Optional[List[GeneSet]]]


class GeneSetCollection(Enum):
    """Valid (category, subcategory) pairs."""

    HALLMARK = ("H", None)
    POSITIONAL = ("C1", None)
    CHEMICAL_GENETIC = ("C2", "CGP")
    CANONICAL_PATHWAYS = ("C2", "CP")
    BIOCARTA = ("C2", "CP:BIOCARTA")
    KEGG = ("C2", "CP:KEGG")
    PID = ("C2", "CP:PID")
    REACTOME = ("C2", "CP:REACTOME")
    WIKIPATHWAYS = ("C2", "CP:WIKIPATHWAYS")
    MIRNA_TARGETS = ("C3", "MIR:MIRDB")
    TF_TARGETS = ("C3", "TFT:GTRD")
    CANCER_NEIGHBORHOODS = ("C4", "CGN")
    CANCER_MODULES = ("C4", "CM")
    GO_BP = ("C5", "GO:BP")
    GO_CC = ("C5", "GO:CC")
    GO_MF = ("C5", "GO:MF")
    HPO = ("C5", "HPO")
    ONCOGENIC = ("C6", None)
    IMMUNESIGDB = ("C7", "IMMUNESIGDB")
    CELL_TYPE = ("C8", None)

    @property
    def category(self) -> str:
        return self.value[0]

    @property
    def subcategory(self) -> Optional[str]:
        return self.value[1]

    @property
    def key(self) -> str:
        """Config-string form, e.g. "C2:CP:KEGG"."""
        if self.subcategory is None:
            return self.category
        return f"{self.category}:{self.subcategory}"

    @classmethod
    def from_pair(cls, category: str, subcategory: Optional[str] = None) -> "GeneSetCollection":
        pair = (category.upper(), subcategory.upper() if subcategory else None)
        try:
            return _BY_PAIR[pair]
        except KeyError:
            raise ConfigurationError(
                f"unknown gene-set collection {category}/{subcategory}",
                stage="config",
            ) from None

    @classmethod
    def parse(cls, key: str) -> "GeneSetCollection":
        category, _, subcategory = key.strip().partition(":")
        return cls.from_pair(category, subcategory or None)


_BY_PAIR: Dict[Tuple[str, Optional[str]], GeneSetCollection] = {
    member.value: member for member in GeneSetCollection
}


class GmtDirectorySource:
    """Reads collections from ``<CATEGORY>[_<SUB>].gmt`` files in a directory.

    "C2:CP:KEGG" maps to ``C2_CP_KEGG.gmt``; "H" maps to ``H.gmt``.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, category: str, subcategory: Optional[str]) -> Path:
        stem = category if not subcategory else f"{category}_{subcategory}"
        return self.directory / f"{stem.replace(':', '_').upper()}.gmt"

    def __call__(self, category: str, subcategory: Optional[str] = None) -> Optional[List[GeneSet]]:
        path = self.path_for(category, subcategory)
        if not path.exists():
            logger.warning(f"Gene-set file not found: {path}")
            return None

        try:
            raw = read_gmt(str(path))
        except (OSError, ValueError) as e:
            raise ExternalLookupError(f"could not read {path.name}: {e}", stage="enrichment") from e

        return [
            GeneSet(name=name, genes=frozenset(g for g in genes if g),
                    category=category, subcategory=subcategory)
            for name, genes in raw.items()
        ]


class MappingGeneSetSource:
    """In-memory source keyed by collection config strings."""

    def __init__(self, collections: Mapping[str, Mapping[str, List[str]]]):
        self._collections = {
            GeneSetCollection.parse(key): sets for key, sets in collections.items()
        }

    def __call__(self, category: str, subcategory: Optional[str] = None) -> Optional[List[GeneSet]]:
        collection = GeneSetCollection.from_pair(category, subcategory)
        sets = self._collections.get(collection)
        if sets is None:
            return None
        return [
            GeneSet(name=name, genes=frozenset(genes), category=category, subcategory=subcategory)
            for name, genes in sets.items()
        ]
