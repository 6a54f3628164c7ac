"""
Template validation and snapshot tests.

Tests cover:
  - Structural errors (start, dangling edges, reachability, missing ports)
  - Entity references checked against RBAC
  - Loops allowed only through approval reject ports
  - Inline routing chains bounded by max_auto_route_hops
  - Snapshots are deep copies, independent from later template edits
"""
import pytest

from stepflow.config.settings import settings
from stepflow.domain.errors import InvalidTemplateError
from stepflow.domain.models import NodeTemplate, EdgeTemplate
from stepflow.engine.snapshot import TemplateValidator, take_snapshot

from .builders import node, edge, approval_gate_graph, budget_routing_graph


def validate(nodes, edges, rbac=None):
    return TemplateValidator(rbac).validate(
        [NodeTemplate.model_validate(n) for n in nodes],
        [EdgeTemplate.model_validate(e) for e in edges],
    )


def error_types(report):
    return {issue.type for issue in report.errors}


def warning_types(report):
    return {issue.type for issue in report.warnings}


class TestStructure:
    def test_valid_graphs(self, rbac):
        assert validate(*approval_gate_graph(), rbac=rbac).is_valid
        assert validate(*approval_gate_graph(allow_send_back=True), rbac=rbac).is_valid
        assert validate(*budget_routing_graph(), rbac=rbac).is_valid

    def test_empty_template(self):
        report = validate([], [])
        assert not report.is_valid
        assert error_types(report) == {"NO_NODES"}

    def test_missing_start(self):
        report = validate([node("end", "END")], [])
        assert "NO_START" in error_types(report)

    def test_two_starts(self):
        nodes = [node("s1", "START"), node("s2", "START"), node("end", "END")]
        report = validate(nodes, [edge("s1", "end"), edge("s2", "end")])
        assert "MULTIPLE_STARTS" in error_types(report)

    def test_duplicate_node_id(self):
        nodes = [node("start", "START"), node("end", "END"), node("end", "END")]
        report = validate(nodes, [edge("start", "end")])
        assert "DUPLICATE_NODE_ID" in error_types(report)

    def test_dangling_edge(self):
        nodes = [node("start", "START"), node("end", "END")]
        report = validate(nodes, [edge("start", "end"), edge("start", "ghost", "extra")])
        assert "DANGLING_EDGE" in error_types(report)

    def test_no_reachable_end(self):
        nodes = [node("start", "START"), node("task", "FORM"), node("end", "END")]
        report = validate(nodes, [edge("start", "task"), edge("end", "task")])
        types = error_types(report)
        assert "NO_REACHABLE_END" in types
        assert "UNREACHABLE_NODE" in types

    def test_missing_approve_edge(self, rbac):
        nodes, edges = approval_gate_graph()
        edges = [e for e in edges if e.get("source_port") != "approve"]
        report = validate(nodes, edges, rbac=rbac)
        assert "MISSING_PORT_EDGE" in error_types(report)

    def test_send_back_requires_reject_edge(self, rbac):
        nodes, edges = approval_gate_graph(allow_send_back=True)
        edges = [e for e in edges if e.get("source_port") != "reject"]
        report = validate(nodes, edges, rbac=rbac)
        assert "MISSING_PORT_EDGE" in error_types(report)

    def test_conditional_without_default_only_warns(self, rbac):
        report = validate(*budget_routing_graph(default_port=None), rbac=rbac)
        assert report.is_valid
        assert "CONDITIONAL_MISSING_DEFAULT" in warning_types(report)

    def test_unknown_port_warns(self):
        nodes = [node("start", "START"), node("end", "END")]
        report = validate(nodes, [edge("start", "end"), edge("start", "end", "sideways")])
        assert report.is_valid
        assert "UNKNOWN_PORT" in warning_types(report)


class TestEntities:
    def test_role_needs_entity(self):
        nodes = [node("start", "START"), node("task", "ROLE"), node("end", "END")]
        report = validate(nodes, [edge("start", "task"), edge("task", "end")])
        assert "MISSING_ENTITY" in error_types(report)

    def test_unknown_entity_is_rejected(self, rbac):
        nodes = [node("start", "START"), node("task", "ROLE", entity_ref="nobody"), node("end", "END")]
        report = validate(nodes, [edge("start", "task"), edge("task", "end")], rbac=rbac)
        assert "INVALID_ENTITY" in error_types(report)

    def test_entities_not_checked_without_resolver(self):
        nodes = [node("start", "START"), node("task", "ROLE", entity_ref="nobody"), node("end", "END")]
        report = validate(nodes, [edge("start", "task"), edge("task", "end")])
        assert report.is_valid


class TestCycles:
    def test_send_back_loop_is_allowed(self, rbac):
        report = validate(*approval_gate_graph(allow_send_back=True), rbac=rbac)
        assert "CYCLE_DETECTED" not in error_types(report)

    def test_forward_cycle_is_rejected(self):
        nodes = [node("start", "START"), node("a", "FORM"), node("b", "FORM"), node("end", "END")]
        edges = [edge("start", "a"), edge("a", "b"), edge("b", "a"), edge("b", "end", "done")]
        report = validate(nodes, edges)
        assert "CYCLE_DETECTED" in error_types(report)

    def test_reject_to_self_is_rejected(self, rbac):
        nodes, edges = approval_gate_graph(allow_send_back=True)
        edges = [e for e in edges if e.get("source_port") != "reject"]
        edges.append(edge("approval", "approval", "reject"))
        report = validate(nodes, edges, rbac=rbac)
        assert "REJECT_TO_SELF" in error_types(report)

    def test_conditional_reject_port_is_not_a_send_back(self):
        nodes = [
            node("start", "START"),
            node(
                "check",
                "CONDITIONAL",
                rules=[{"port": "reject", "conditions": [{"fact": "retry", "operator": "EQUALS", "value": True}]}],
                default_port="default",
            ),
            node("end", "END"),
        ]
        edges = [edge("start", "check"), edge("check", "check", "reject"), edge("check", "end")]
        report = validate(nodes, edges)
        assert "CYCLE_DETECTED" in error_types(report)


class TestAutoRouteDepth:
    @staticmethod
    def conditional_chain(length):
        ids = [f"c{i}" for i in range(1, length + 1)]
        nodes = [node("start", "START")] + [node(i, "CONDITIONAL") for i in ids] + [node("end", "END")]
        path = ["start"] + ids + ["end"]
        edges = [edge(a, b) for a, b in zip(path, path[1:])]
        return nodes, edges

    def test_chain_within_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "max_auto_route_hops", 4)
        report = validate(*self.conditional_chain(3))
        assert "AUTO_ROUTE_TOO_DEEP" not in error_types(report)

    def test_chain_over_limit(self, monkeypatch):
        # three conditionals plus the end node route inline
        monkeypatch.setattr(settings, "max_auto_route_hops", 3)
        report = validate(*self.conditional_chain(3))
        assert error_types(report) == {"AUTO_ROUTE_TOO_DEEP"}
        assert "c1" in report.errors[0].message

    def test_human_step_resets_the_chain(self, monkeypatch):
        monkeypatch.setattr(settings, "max_auto_route_hops", 2)
        nodes = [
            node("start", "START"),
            node("c1", "CONDITIONAL"),
            node("details", "FORM"),
            node("c2", "CONDITIONAL"),
            node("end", "END"),
        ]
        edges = [edge("start", "c1"), edge("c1", "details"), edge("details", "c2"), edge("c2", "end")]
        assert validate(nodes, edges).is_valid


class TestSnapshot:
    def test_invalid_template_raises_with_all_errors(self, make_template):
        template = make_template([node("start", "START"), node("end", "END")], [])
        with pytest.raises(InvalidTemplateError) as exc_info:
            take_snapshot(template)
        assert exc_info.value.details["template_id"] == template.template_id
        assert any(e["type"] == "NO_REACHABLE_END" for e in exc_info.value.details["errors"])

    def test_snapshot_is_a_deep_copy(self, make_template, rbac):
        template = make_template(*approval_gate_graph())
        snapshot = take_snapshot(template, rbac=rbac)

        assert snapshot.template_id == template.template_id
        assert snapshot.template_version == template.version
        template.nodes[1].entity_ref = "finance"
        assert snapshot.get_node("review").entity_ref == "requesters"

    def test_outgoing_keeps_declared_order(self, make_template):
        nodes = [node("start", "START"), node("a", "END"), node("b", "END")]
        template = make_template(nodes, [edge("start", "b"), edge("start", "a")])
        snapshot = take_snapshot(template)
        assert [e.target for e in snapshot.outgoing("start", "default")] == ["b", "a"]
