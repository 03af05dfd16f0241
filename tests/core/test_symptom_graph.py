# tests/core/test_symptom_graph.py

import pytest

from src.core.symptom_graph import build_symptom_graph
from src.models.flow_models import AnalysisResult, Diagnosis, NodeKind, SymptomLink


@pytest.mark.unit
class TestSymptomGraph:

    def test_nodes_are_unique_in_first_seen_order(self, sample_analysis):
        graph = build_symptom_graph(sample_analysis)

        assert [n.name for n in graph.nodes] == ["头痛", "偏头痛", "畏光", "紧张性头痛"]
        assert [n.kind for n in graph.nodes] == [
            NodeKind.SYMPTOM, NodeKind.CONDITION, NodeKind.SYMPTOM, NodeKind.CONDITION
        ]

    def test_links_reference_node_indices(self, sample_analysis):
        graph = build_symptom_graph(sample_analysis)

        assert [(l.source, l.target, l.value) for l in graph.links] == [(0, 1, 8), (2, 1, 6), (0, 3, 5)]

    def test_unknown_condition_is_generic(self):
        result = AnalysisResult(
            diagnoses=[Diagnosis(name="感冒", probability=60)],
            symptom_links=[
                SymptomLink(symptom="咳嗽", condition="感冒", strength=7),
                SymptomLink(symptom="咳嗽", condition="支气管炎", strength=3),
            ]
        )

        graph = build_symptom_graph(result)

        assert graph.nodes[2].name == "支气管炎"
        assert graph.nodes[2].kind is NodeKind.GENERIC
        assert len(graph.links) == 2

    def test_diagnosis_as_source_is_condition(self):
        result = AnalysisResult(
            diagnoses=[Diagnosis(name="流感", probability=50), Diagnosis(name="肺炎", probability=30)],
            symptom_links=[SymptomLink(symptom="流感", condition="肺炎", strength=4)]
        )

        graph = build_symptom_graph(result)

        assert [n.kind for n in graph.nodes] == [NodeKind.CONDITION, NodeKind.CONDITION]

    def test_placeholder_gives_empty_graph(self):
        graph = build_symptom_graph(AnalysisResult.placeholder())

        assert graph.nodes == []
        assert graph.links == []
