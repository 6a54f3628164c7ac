"""
Workflow engine tests.

Tests cover:
  - Approval gate: threshold, history, assignments
  - Conditional routing on form facts, default branch, parking
  - Send-back loops and approval rounds
  - Duplicate, late and feedback votes
  - Invalid templates, inactive templates, auto-route hop limit
  - Command validation order and permissions
  - Cancellation
  - Snapshot isolation from template edits
"""
import pytest

from stepflow.config.settings import settings
from stepflow.domain.enums import InstanceStatus, HistoryEventType
from stepflow.domain.errors import (
    DuplicateApprovalError, InstanceAlreadyTerminalError, InstanceNotFoundError,
    InvalidActionError, InvalidTemplateError, NoMatchingEdgeError, NodeNotActiveError,
    PermissionDeniedError, TemplateInactiveError, ValidationError,
)
from stepflow.domain.models import NodeTemplate

from .builders import node, edge, approval_gate_graph, budget_routing_graph
from .conftest import SUPERUSER


def active_ids(engine, instance_id):
    return [s.node_id for s in engine.get_active_steps(instance_id)]


def event_types(engine, instance_id):
    return [h.event_type for h in engine.get_history(instance_id)]


@pytest.fixture()
def gate(make_template, engine):
    """Start an approval-gate instance past its review step"""
    def _start(**kwargs):
        template = make_template(*approval_gate_graph(**kwargs))
        instance = engine.start_instance(template.template_id, "PRJ-1", started_by="alice")
        engine.complete_role_step(instance.instance_id, "review", "alice")
        return instance.instance_id
    return _start


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL GATE
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalGate:
    def test_two_of_n_approvals_complete_the_instance(self, make_template, engine):
        template = make_template(*approval_gate_graph(required_approvals=2))
        instance = engine.start_instance(template.template_id, "PRJ-1", started_by="alice")
        instance_id = instance.instance_id

        assert instance.status == InstanceStatus.ACTIVE
        assert instance.snapshot.template_version == 1
        assert active_ids(engine, instance_id) == ["review"]
        assert [a.node_id for a in engine.get_assignments_for_user("bob")] == ["review"]

        result = engine.complete_role_step(instance_id, "review", "alice")
        assert result.advanced is True
        assert result.active_node_ids == ["approval"]
        assert engine.get_assignments_for_user("bob") == []
        assert {a.user_id for a in engine.get_assignments_for_node(instance_id, "approval")} == {
            "carol", "dave", "erin", "frank", "grace",
        }

        first = engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")
        assert first.advanced is False
        assert first.vote.counted is True
        assert first.active_node_ids == ["approval"]

        second = engine.record_approval_vote(instance_id, "approval", "dave", "approve")
        assert second.advanced is True
        assert second.port == "approve"
        assert second.status == InstanceStatus.COMPLETED
        assert second.active_node_ids == []

        final = engine.get_instance(instance_id)
        assert final.status == InstanceStatus.COMPLETED
        assert final.completed_at is not None
        assert final.facts["approvals"] == {"approval": "approve"}
        assert final.facts["last_decision"] == "approve"
        assert active_ids(engine, instance_id) == []
        assert engine.get_assignments_for_user("carol") == []

        history = engine.get_history(instance_id)
        assert [h.event_type for h in history] == [
            HistoryEventType.STARTED,
            HistoryEventType.ADVANCED,
            HistoryEventType.ADVANCED,
            HistoryEventType.COMPLETED,
        ]
        assert [h.node_id for h in history] == ["start", "review", "approval", "end"]
        assert [h.sequence for h in history] == [0, 1, 2, 3]
        assert history[1].actor_id == "alice"
        assert history[3].actor_id == "dave"
        assert history[3].decision == "approve"

    def test_single_approval_is_enough_when_required_is_one(self, gate, engine):
        instance_id = gate(required_approvals=1)
        result = engine.record_approval_vote(instance_id, "approval", "erin", "APPROVE")
        assert result.status == InstanceStatus.COMPLETED

    def test_non_member_cannot_vote(self, gate, engine):
        instance_id = gate()
        with pytest.raises(PermissionDeniedError):
            engine.record_approval_vote(instance_id, "approval", "alice", "APPROVE")

    def test_unknown_decision(self, gate, engine):
        instance_id = gate()
        with pytest.raises(ValidationError):
            engine.record_approval_vote(instance_id, "approval", "carol", "MAYBE")


# ═════════════════════════════════════════════════════════════════════════
# CONDITIONAL ROUTING
# ═════════════════════════════════════════════════════════════════════════

class TestConditionalRouting:
    def test_high_budget_routes_to_finance(self, make_template, engine):
        template = make_template(*budget_routing_graph())
        instance = engine.start_instance(template.template_id, "PRJ-2", started_by="alice")
        assert active_ids(engine, instance.instance_id) == ["intake"]

        result = engine.submit_form(
            instance.instance_id, "intake", "alice", {"budget": 15000, "item": "Servers"}
        )
        assert result.active_node_ids == ["high_review"]

        updated = engine.get_instance(instance.instance_id)
        assert updated.facts["budget"] == 15000
        assert updated.facts["forms"]["intake"] == {"budget": 15000, "item": "Servers"}

        history = engine.get_history(instance.instance_id)
        assert history[-1].event_type == HistoryEventType.AUTO_ROUTED
        assert history[-1].from_node_id == "route"
        assert history[-1].node_id == "high_review"
        assert history[-1].port == "high"

    def test_low_budget_takes_default_branch(self, make_template, engine):
        template = make_template(*budget_routing_graph())
        instance = engine.start_instance(template.template_id, "PRJ-2", started_by="alice")

        result = engine.submit_form(instance.instance_id, "intake", "alice", {"budget": "500"})
        assert result.active_node_ids == ["low_review"]
        assert engine.get_instance(instance.instance_id).facts["budget"] == 500
        assert [a.node_id for a in engine.get_assignments_for_user("pat")] == ["low_review"]

        with pytest.raises(PermissionDeniedError):
            engine.complete_role_step(instance.instance_id, "low_review", "alice")
        done = engine.complete_role_step(instance.instance_id, "low_review", "pat")
        assert done.status == InstanceStatus.COMPLETED

    def test_invalid_form_leaves_instance_untouched(self, make_template, engine):
        template = make_template(*budget_routing_graph())
        instance = engine.start_instance(template.template_id, "PRJ-2", started_by="alice")

        with pytest.raises(ValidationError) as exc_info:
            engine.submit_form(instance.instance_id, "intake", "alice", {"budget": "lots"})
        assert "budget" in exc_info.value.details["validation_errors"]

        with pytest.raises(ValidationError):
            engine.submit_form(instance.instance_id, "intake", "alice", {"item": "Chairs"})

        assert active_ids(engine, instance.instance_id) == ["intake"]
        assert len(engine.get_history(instance.instance_id)) == 2
        assert "budget" not in engine.get_instance(instance.instance_id).facts

    def test_no_matching_rule_parks_the_instance(self, make_template, engine):
        template = make_template(*budget_routing_graph(default_port=None))
        instance = engine.start_instance(template.template_id, "PRJ-3", started_by="alice")
        instance_id = instance.instance_id

        with pytest.raises(NoMatchingEdgeError) as exc_info:
            engine.submit_form(instance_id, "intake", "alice", {"budget": 5})
        assert exc_info.value.details["instance_id"] == instance_id
        assert exc_info.value.details["node_id"] == "route"

        parked = engine.get_instance(instance_id)
        assert parked.status == InstanceStatus.ACTIVE
        assert parked.stuck.node_id == "route"
        assert parked.facts["budget"] == 5
        assert active_ids(engine, instance_id) == ["route"]
        assert event_types(engine, instance_id)[-1] == HistoryEventType.STUCK
        assert [i.instance_id for i in engine.list_stuck_instances()] == [instance_id]

    def test_passthrough_chain_completes_on_start(self, make_template, engine):
        nodes = [node("start", "START"), node("c1", "CONDITIONAL"), node("c2", "CONDITIONAL"), node("end", "END")]
        edges = [edge("start", "c1"), edge("c1", "c2"), edge("c2", "end")]
        template = make_template(nodes, edges)

        instance = engine.start_instance(template.template_id, "PRJ-4")
        assert instance.status == InstanceStatus.COMPLETED
        assert event_types(engine, instance.instance_id) == [
            HistoryEventType.STARTED,
            HistoryEventType.ADVANCED,
            HistoryEventType.AUTO_ROUTED,
            HistoryEventType.COMPLETED,
        ]

    def test_auto_route_hop_limit(self, make_template, engine, monkeypatch):
        nodes = [node("start", "START"), node("c1", "CONDITIONAL"), node("c2", "CONDITIONAL"), node("end", "END")]
        edges = [edge("start", "c1"), edge("c1", "c2"), edge("c2", "end")]
        template = make_template(nodes, edges)
        monkeypatch.setattr(settings, "max_auto_route_hops", 1)

        with pytest.raises(InvalidTemplateError) as exc_info:
            engine.start_instance(template.template_id, "PRJ-4")
        assert [e["type"] for e in exc_info.value.details["errors"]] == ["AUTO_ROUTE_TOO_DEEP"]
        assert engine.list_instances() == []


# ═════════════════════════════════════════════════════════════════════════
# SEND-BACK AND ROUNDS
# ═════════════════════════════════════════════════════════════════════════

class TestSendBack:
    def test_reject_returns_to_review_and_opens_new_round(self, gate, engine):
        instance_id = gate(required_approvals=2, allow_send_back=True)
        first_round = engine.get_latest_round(instance_id, "approval")

        engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")
        result = engine.record_approval_vote(
            instance_id, "approval", "dave", "REJECT", comment="Missing quote"
        )
        assert result.port == "reject"
        assert result.active_node_ids == ["review"]
        assert engine.get_instance(instance_id).facts["last_decision"] == "reject"

        sent_back = engine.get_history(instance_id)[-1]
        assert sent_back.event_type == HistoryEventType.ADVANCED
        assert sent_back.node_id == "review"
        assert sent_back.decision == "reject"

        engine.complete_role_step(instance_id, "review", "bob")
        second_round = engine.get_latest_round(instance_id, "approval")
        assert second_round.round_id != first_round.round_id
        assert second_round.is_resolved is False

        # Votes from the first round do not carry over
        engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")
        done = engine.record_approval_vote(instance_id, "approval", "erin", "APPROVE")
        assert done.status == InstanceStatus.COMPLETED
        assert engine.get_instance(instance_id).facts["last_decision"] == "approve"

    def test_reject_without_reject_edge_parks_at_approval(self, gate, engine):
        instance_id = gate(required_approvals=1)

        with pytest.raises(NoMatchingEdgeError) as exc_info:
            engine.record_approval_vote(instance_id, "approval", "carol", "REJECT")
        assert exc_info.value.details["port"] == "reject"

        parked = engine.get_instance(instance_id)
        assert parked.status == InstanceStatus.ACTIVE
        assert parked.stuck.node_id == "approval"
        assert parked.stuck.port == "reject"
        assert active_ids(engine, instance_id) == ["approval"]


# ═════════════════════════════════════════════════════════════════════════
# VOTE EDGE CASES
# ═════════════════════════════════════════════════════════════════════════

class TestVotes:
    def test_duplicate_vote_is_rejected(self, gate, engine):
        instance_id = gate(required_approvals=2)
        engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")

        with pytest.raises(DuplicateApprovalError):
            engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")

        assert engine.get_instance(instance_id).status == InstanceStatus.ACTIVE
        assert len(engine.get_votes(instance_id, "approval")) == 1

    def test_feedback_does_not_count(self, gate, engine):
        instance_id = gate(required_approvals=1)

        result = engine.record_approval_vote(
            instance_id, "approval", "erin", "FEEDBACK", comment="Please attach the quote"
        )
        assert result.advanced is False
        assert result.vote.counted is False
        assert engine.get_votes(instance_id, "approval") == []
        assert [f.user_id for f in engine.get_feedback(instance_id, "approval")] == ["erin"]
        assert active_ids(engine, instance_id) == ["approval"]

    def test_late_vote_is_kept_but_not_counted(self, gate, engine):
        instance_id = gate(required_approvals=2, after="payment")
        engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")
        engine.record_approval_vote(instance_id, "approval", "dave", "APPROVE")
        assert active_ids(engine, instance_id) == ["payment"]

        late = engine.record_approval_vote(instance_id, "approval", "erin", "REJECT")
        assert late.advanced is False
        assert late.vote.counted is False
        assert late.active_node_ids == ["payment"]

        votes = engine.get_votes(instance_id, "approval")
        assert len(votes) == 3
        assert [v.user_id for v in votes if v.counted] == ["carol", "dave"]
        assert active_ids(engine, instance_id) == ["payment"]


# ═════════════════════════════════════════════════════════════════════════
# COMMAND VALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestCommandValidation:
    def test_unknown_instance(self, engine):
        with pytest.raises(InstanceNotFoundError):
            engine.complete_role_step("WFI-MISSING", "review", "alice")
        with pytest.raises(InstanceNotFoundError):
            engine.get_history("WFI-MISSING")

    def test_node_not_in_graph(self, gate, engine):
        instance_id = gate()
        with pytest.raises(NodeNotActiveError):
            engine.complete_role_step(instance_id, "ghost", "alice")

    def test_node_not_active(self, gate, engine):
        instance_id = gate()
        with pytest.raises(NodeNotActiveError):
            engine.complete_role_step(instance_id, "review", "alice")

    def test_wrong_command_for_node_type(self, gate, engine):
        instance_id = gate()
        with pytest.raises(InvalidActionError):
            engine.complete_role_step(instance_id, "approval", "carol")
        with pytest.raises(InvalidActionError):
            engine.submit_form(instance_id, "approval", "carol", {})

    def test_non_member_cannot_complete(self, make_template, engine):
        template = make_template(*approval_gate_graph())
        instance = engine.start_instance(template.template_id, "PRJ-1", started_by="alice")
        with pytest.raises(PermissionDeniedError):
            engine.complete_role_step(instance.instance_id, "review", "carol")
        assert active_ids(engine, instance.instance_id) == ["review"]

    def test_superuser_may_act_anywhere(self, make_template, engine):
        template = make_template(*approval_gate_graph(required_approvals=1))
        instance = engine.start_instance(template.template_id, "PRJ-1", started_by="alice")
        engine.complete_role_step(instance.instance_id, "review", SUPERUSER)
        result = engine.record_approval_vote(instance.instance_id, "approval", SUPERUSER, "APPROVE")
        assert result.status == InstanceStatus.COMPLETED

    def test_commands_on_completed_instance(self, gate, engine):
        instance_id = gate(required_approvals=1)
        engine.record_approval_vote(instance_id, "approval", "carol", "APPROVE")

        with pytest.raises(InstanceAlreadyTerminalError):
            engine.record_approval_vote(instance_id, "approval", "dave", "APPROVE")
        with pytest.raises(InstanceAlreadyTerminalError):
            engine.cancel_instance(instance_id, "alice")

    def test_notes_become_facts(self, make_template, engine):
        template = make_template(*approval_gate_graph())
        instance = engine.start_instance(template.template_id, "PRJ-1", started_by="alice")
        engine.complete_role_step(instance.instance_id, "review", "bob", notes="Quote attached")
        assert engine.get_instance(instance.instance_id).facts["notes"] == {"review": "Quote attached"}


# ═════════════════════════════════════════════════════════════════════════
# START AND CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_template_without_reachable_end_cannot_start(self, make_template, engine):
        template = make_template(
            [node("start", "START"), node("task", "FORM"), node("end", "END")],
            [edge("start", "task")],
        )
        with pytest.raises(InvalidTemplateError):
            engine.start_instance(template.template_id, "PRJ-5", started_by="alice")
        assert engine.list_instances() == []

    def test_inactive_template_cannot_start(self, make_template, engine, template_service, designer):
        template = make_template(*approval_gate_graph(), is_active=False)
        with pytest.raises(TemplateInactiveError):
            engine.start_instance(template.template_id, "PRJ-5")

        template_service.set_active(template.template_id, True, designer)
        instance = engine.start_instance(template.template_id, "PRJ-5")
        assert instance.status == InstanceStatus.ACTIVE

    def test_cancel_by_starter(self, make_template, engine):
        template = make_template(*approval_gate_graph())
        instance = engine.start_instance(template.template_id, "PRJ-6", started_by="alice")

        with pytest.raises(PermissionDeniedError):
            engine.cancel_instance(instance.instance_id, "bob")

        cancelled = engine.cancel_instance(instance.instance_id, "alice", reason="Duplicate request")
        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.cancel_reason == "Duplicate request"
        assert active_ids(engine, instance.instance_id) == []
        assert engine.get_assignments_for_user("alice") == []

        last = engine.get_history(instance.instance_id)[-1]
        assert last.event_type == HistoryEventType.CANCELLED
        assert last.details["active_node_ids"] == ["review"]

        with pytest.raises(InstanceAlreadyTerminalError):
            engine.complete_role_step(instance.instance_id, "review", "alice")

    def test_cancel_by_superuser_or_when_starter_unknown(self, make_template, engine):
        template = make_template(*approval_gate_graph())
        owned = engine.start_instance(template.template_id, "PRJ-6", started_by="alice")
        anonymous = engine.start_instance(template.template_id, "PRJ-7")

        assert engine.cancel_instance(owned.instance_id, SUPERUSER).status == InstanceStatus.CANCELLED
        assert engine.cancel_instance(anonymous.instance_id, "bob").status == InstanceStatus.CANCELLED

    def test_list_instances_by_project_and_status(self, make_template, engine):
        template = make_template(*approval_gate_graph())
        first = engine.start_instance(template.template_id, "PRJ-8", started_by="alice")
        engine.start_instance(template.template_id, "PRJ-9", started_by="alice")
        engine.cancel_instance(first.instance_id, "alice")

        assert [i.project_id for i in engine.list_instances(project_id="PRJ-8")] == ["PRJ-8"]
        active = engine.list_instances(status=InstanceStatus.ACTIVE)
        assert [i.project_id for i in active] == ["PRJ-9"]

        status = engine.get_instance_status(first.instance_id)
        assert status.status == InstanceStatus.CANCELLED
        assert status.active_node_ids == []


# ═════════════════════════════════════════════════════════════════════════
# SNAPSHOT ISOLATION
# ═════════════════════════════════════════════════════════════════════════

class TestSnapshotIsolation:
    def test_running_instance_ignores_template_edits(
        self, make_template, engine, template_service, designer
    ):
        nodes, edges = approval_gate_graph()
        template = make_template(nodes, edges)
        running = engine.start_instance(template.template_id, "PRJ-10", started_by="alice")

        edited_nodes = [NodeTemplate.model_validate(n) for n in nodes]
        edited_nodes[1].entity_ref = "finance"
        updated = template_service.update_template(
            template.template_id, designer, expected_version=1, nodes=edited_nodes
        )
        assert updated.version == 2

        # Old snapshot: requesters still own the review step
        with pytest.raises(PermissionDeniedError):
            engine.complete_role_step(running.instance_id, "review", "carol")
        engine.complete_role_step(running.instance_id, "review", "alice")

        fresh = engine.start_instance(template.template_id, "PRJ-11", started_by="alice")
        assert fresh.snapshot.template_version == 2
        assert fresh.snapshot.get_node("review").entity_ref == "finance"
        assert engine.get_instance(running.instance_id).snapshot.template_version == 1
