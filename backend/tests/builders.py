"""Graph builders shared by engine, concurrency and API tests"""
from typing import Any, Dict, Optional


def node(node_id: str, node_type: str, **extra: Any) -> Dict[str, Any]:
    return {"node_id": node_id, "node_type": node_type, "label": node_id.title(), **extra}


def edge(source: str, target: str, port: Optional[str] = None) -> Dict[str, Any]:
    data = {"source": source, "target": target}
    if port:
        data["source_port"] = port
    return data


def approval_gate_graph(required_approvals: int = 2, allow_send_back: bool = False, after: str = "end"):
    """start -> review (requesters) -> approval (finance) -> [after] -> end"""
    nodes = [
        node("start", "START"),
        node("review", "ROLE", entity_ref="requesters"),
        node(
            "approval",
            "APPROVAL",
            entity_ref="finance",
            approval={"required_approvals": required_approvals, "allow_send_back": allow_send_back},
        ),
        node("end", "END"),
    ]
    edges = [
        edge("start", "review"),
        edge("review", "approval"),
    ]
    if after == "end":
        edges.append(edge("approval", "end", "approve"))
    else:
        # Form without entity: nobody gets assigned after the gate
        nodes.insert(3, node(after, "FORM"))
        edges.append(edge("approval", after, "approve"))
        edges.append(edge(after, "end"))
    if allow_send_back:
        edges.append(edge("approval", "review", "reject"))
    return nodes, edges


def budget_routing_graph(default_port: Optional[str] = "low"):
    """start -> intake form -> route (budget > 10000 ? high : default) -> review -> end"""
    nodes = [
        node("start", "START"),
        node(
            "intake",
            "FORM",
            fields=[
                {"key": "budget", "label": "Budget", "field_type": "NUMBER", "required": True},
                {"key": "item", "label": "Item", "field_type": "TEXT"},
            ],
        ),
        node(
            "route",
            "CONDITIONAL",
            rules=[{
                "port": "high",
                "label": "Over 10k",
                "conditions": [{"fact": "budget", "operator": "GREATER_THAN", "value": 10000}],
            }],
            default_port=default_port,
        ),
        node("high_review", "ROLE", entity_ref="finance"),
        node("end", "END"),
    ]
    edges = [
        edge("start", "intake"),
        edge("intake", "route"),
        edge("route", "high_review", "high"),
        edge("high_review", "end"),
    ]
    if default_port:
        nodes.insert(4, node("low_review", "DEPARTMENT", entity_ref="procurement"))
        edges.append(edge("route", "low_review", default_port))
        edges.append(edge("low_review", "end"))
    return nodes, edges
