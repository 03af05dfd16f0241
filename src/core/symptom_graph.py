# src/core/symptom_graph.py
"""
Node/link data for the symptom -> condition flow diagram.
"""
import logging
from typing import Dict, List

from src.models.flow_models import AnalysisResult, GraphLink, GraphNode, NodeKind, SymptomGraph

logger = logging.getLogger(__name__)


def build_symptom_graph(result: AnalysisResult) -> SymptomGraph:
    """
    Build index-linked nodes and links from an analysis result.

    Node names are unique and keep first-seen order. A link's condition that
    names no diagnosis still gets a node, marked generic.
    """
    diagnosis_names = {d.name for d in result.diagnoses}
    index: Dict[str, int] = {}
    nodes: List[GraphNode] = []
    links: List[GraphLink] = []

    def node_for(name: str, kind: NodeKind) -> int:
        if name not in index:
            index[name] = len(nodes)
            nodes.append(GraphNode(name=name, kind=kind))
        return index[name]

    for link in result.symptom_links:
        if link.symptom in diagnosis_names:
            source_kind = NodeKind.CONDITION
        else:
            source_kind = NodeKind.SYMPTOM
        target_kind = NodeKind.CONDITION if link.condition in diagnosis_names else NodeKind.GENERIC

        source = node_for(link.symptom, source_kind)
        target = node_for(link.condition, target_kind)
        links.append(GraphLink(source=source, target=target, value=link.strength))

    unmatched = [n.name for n in nodes if n.kind is NodeKind.GENERIC]
    if unmatched:
        logger.info(f"Links reference unknown conditions: {unmatched}")

    return SymptomGraph(nodes=nodes, links=links)
