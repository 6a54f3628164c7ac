"""Template Snapshot - Validate a template and freeze its graph for one instance"""
from typing import Dict, List, Optional, Set

from ..domain.models import (
    WorkflowTemplate, FrozenGraph, NodeTemplate, EdgeTemplate, TemplateIssue, ValidationReport
)
from ..domain.enums import NodeType, Port
from ..config.settings import settings
from ..domain.errors import InvalidTemplateError
from ..services.rbac_service import RbacResolver
from .node_handlers import get_handler
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TemplateValidator:
    """
    Check the structural invariants of a template graph

    Errors (block StartInstance):
    - no nodes, duplicate/unusable node ids, not exactly one start
    - edges pointing at unknown nodes
    - nodes unreachable from start, no end reachable from start
    - a required port without an edge, a rule port without an edge
    - role/department/approval nodes without a (known) entity
    - cycles not closed through a reject port, reject edges to self
    - pass-through chains (conditional, end) longer than max_auto_route_hops

    Warnings: unknown ports, several edges on one port, conditional without
    an edge on its default port, edges into start, edges out of end.
    """

    def __init__(self, rbac: Optional[RbacResolver] = None):
        self.rbac = rbac

    def validate(self, nodes: List[NodeTemplate], edges: List[EdgeTemplate]) -> ValidationReport:
        """Validate a node/edge graph"""
        errors: List[TemplateIssue] = []
        warnings: List[TemplateIssue] = []

        if not nodes:
            errors.append(TemplateIssue(
                type="NO_NODES",
                message="Template must have at least one node",
                path="nodes",
            ))
            return ValidationReport(is_valid=False, errors=errors, warnings=warnings)

        node_lookup: Dict[str, NodeTemplate] = {}
        for i, node in enumerate(nodes):
            if node.node_id in node_lookup:
                errors.append(TemplateIssue(
                    type="DUPLICATE_NODE_ID",
                    message=f"Duplicate node_id: {node.node_id}",
                    path=f"nodes[{i}].node_id",
                ))
            node_lookup[node.node_id] = node
            if "." in node.node_id or node.node_id.startswith("$"):
                errors.append(TemplateIssue(
                    type="INVALID_NODE_ID",
                    message=f"Node id '{node.node_id}' may not contain '.' or start with '$'",
                    path=f"nodes[{i}].node_id",
                ))

        starts = [n for n in nodes if n.node_type == NodeType.START]
        if not starts:
            errors.append(TemplateIssue(
                type="NO_START",
                message="Template must have exactly one start node (found none)",
                path="nodes",
            ))
        elif len(starts) > 1:
            errors.append(TemplateIssue(
                type="MULTIPLE_STARTS",
                message=f"Template must have exactly one start node (found {len(starts)})",
                path="nodes",
            ))

        # Edges
        valid_edges: List[EdgeTemplate] = []
        for i, edge in enumerate(edges):
            dangling = [end for end in (edge.source, edge.target) if end not in node_lookup]
            if dangling:
                errors.append(TemplateIssue(
                    type="DANGLING_EDGE",
                    message=f"Edge {edge.edge_id or i} references unknown node(s): {', '.join(dangling)}",
                    path=f"edges[{i}]",
                ))
                continue
            valid_edges.append(edge)

            source = node_lookup[edge.source]
            target = node_lookup[edge.target]
            if target.node_type == NodeType.START:
                warnings.append(TemplateIssue(
                    type="EDGE_INTO_START",
                    message=f"Edge {edge.edge_id or i} points back at the start node",
                    path=f"edges[{i}]",
                ))
            if source.node_type == NodeType.END:
                warnings.append(TemplateIssue(
                    type="EDGE_FROM_END",
                    message=f"Edge {edge.edge_id or i} leaves end node {source.node_id} and is never taken",
                    path=f"edges[{i}]",
                ))
            elif edge.source_port not in get_handler(source.node_type).known_ports(source):
                warnings.append(TemplateIssue(
                    type="UNKNOWN_PORT",
                    message=f"Node {source.node_id} never emits port '{edge.source_port}'",
                    path=f"edges[{i}].source_port",
                ))
            if (
                source.node_type == NodeType.APPROVAL
                and edge.source_port == Port.REJECT.value
                and edge.target == edge.source
            ):
                errors.append(TemplateIssue(
                    type="REJECT_TO_SELF",
                    message=f"Approval node {source.node_id} cannot send back to itself",
                    path=f"edges[{i}]",
                ))

        # Per-node checks
        for i, node in enumerate(nodes):
            handler = get_handler(node.node_type)
            outgoing = [e for e in valid_edges if e.source == node.node_id]
            errors.extend(handler.validate(node))

            for port in handler.required_ports(node):
                port_edges = [e for e in outgoing if e.source_port == port]
                if not port_edges:
                    errors.append(TemplateIssue(
                        type="MISSING_PORT_EDGE",
                        message=f"Node {node.node_id} ({node.node_type.value}) has no edge on port '{port}'",
                        path=f"nodes[{i}]",
                    ))
                elif len(port_edges) > 1:
                    warnings.append(TemplateIssue(
                        type="DUPLICATE_PORT_EDGE",
                        message=(
                            f"Node {node.node_id} has {len(port_edges)} edges on port '{port}'; "
                            f"the first declared ({port_edges[0].target}) wins"
                        ),
                        path=f"nodes[{i}]",
                    ))

            if node.node_type == NodeType.CONDITIONAL:
                if not outgoing:
                    errors.append(TemplateIssue(
                        type="CONDITIONAL_NO_OUTPUT",
                        message=f"Conditional node {node.node_id} has no outgoing edges",
                        path=f"nodes[{i}]",
                    ))
                elif not node.default_port or not any(e.source_port == node.default_port for e in outgoing):
                    warnings.append(TemplateIssue(
                        type="CONDITIONAL_MISSING_DEFAULT",
                        message=f"Conditional node {node.node_id} has no default path; unmatched facts will park the instance",
                        path=f"nodes[{i}]",
                    ))

            if handler.requires_entity:
                if not node.entity_ref:
                    errors.append(TemplateIssue(
                        type="MISSING_ENTITY",
                        message=f"Node {node.node_id} ({node.node_type.value}) must reference a role or department",
                        path=f"nodes[{i}].entity_ref",
                    ))
                elif self.rbac is not None and not self.rbac.entity_exists(node.entity_ref):
                    errors.append(TemplateIssue(
                        type="INVALID_ENTITY",
                        message=f"Node {node.node_id} references unknown entity '{node.entity_ref}'",
                        path=f"nodes[{i}].entity_ref",
                    ))

        # Reachability
        if len(starts) == 1:
            reachable = self._find_reachable_nodes(starts[0].node_id, valid_edges)
            for i, node in enumerate(nodes):
                if node.node_id not in reachable:
                    errors.append(TemplateIssue(
                        type="UNREACHABLE_NODE",
                        message=f"Node {node.node_id} is not reachable from the start node",
                        path=f"nodes[{i}]",
                    ))
            if not any(node_lookup[n].node_type == NodeType.END for n in reachable if n in node_lookup):
                errors.append(TemplateIssue(
                    type="NO_REACHABLE_END",
                    message="No end node is reachable from the start node",
                    path="nodes",
                ))

        cycle = self._find_forward_cycle(node_lookup, valid_edges)
        if cycle:
            errors.append(TemplateIssue(
                type="CYCLE_DETECTED",
                message=f"Cycle {' -> '.join(cycle)} is not closed through a reject port",
                path="edges",
            ))
        else:
            errors.extend(self._check_auto_route_depth(node_lookup, valid_edges))

        return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)

    def validate_template(self, template: WorkflowTemplate) -> ValidationReport:
        """Validate a stored template"""
        return self.validate(template.nodes, template.edges)

    def _find_reachable_nodes(self, start_node_id: str, edges: List[EdgeTemplate]) -> Set[str]:
        """Find all nodes reachable from start"""
        reachable = {start_node_id}
        to_visit = [start_node_id]

        while to_visit:
            current = to_visit.pop()
            for edge in edges:
                if edge.source == current and edge.target not in reachable:
                    reachable.add(edge.target)
                    to_visit.append(edge.target)

        return reachable

    def _find_forward_cycle(
        self,
        node_lookup: Dict[str, NodeTemplate],
        edges: List[EdgeTemplate]
    ) -> Optional[List[str]]:
        """
        Find a cycle that does not pass through a reject port

        Send-back loops (approval reject -> earlier node) are the only
        loops allowed. A conditional rule that names its port `reject` gets
        no such exemption. Returns the node path of the first cycle found.
        """
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_lookup}
        for edge in edges:
            if self._is_send_back(node_lookup, edge):
                continue
            adjacency[edge.source].append(edge.target)

        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in node_lookup}

        for root in node_lookup:
            if color[root] != WHITE:
                continue
            path = [root]
            stack = [(root, iter(adjacency[root]))]
            color[root] = GREY
            while stack:
                current, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[current] = BLACK
                    stack.pop()
                    path.pop()
                elif color[child] == GREY:
                    return path[path.index(child):] + [child]
                elif color[child] == WHITE:
                    color[child] = GREY
                    path.append(child)
                    stack.append((child, iter(adjacency[child])))
        return None

    @staticmethod
    def _is_send_back(node_lookup: Dict[str, NodeTemplate], edge: EdgeTemplate) -> bool:
        source = node_lookup.get(edge.source)
        return (
            source is not None
            and source.node_type == NodeType.APPROVAL
            and edge.source_port == Port.REJECT.value
        )

    def _check_auto_route_depth(
        self,
        node_lookup: Dict[str, NodeTemplate],
        edges: List[EdgeTemplate]
    ) -> List[TemplateIssue]:
        """
        Bound inline routing

        Conditional and end nodes resolve inside the command that reaches
        them. Only call on a graph without forward cycles.
        """
        def routes_inline(node_id: str) -> bool:
            node = node_lookup[node_id]
            return node.node_type != NodeType.START and get_handler(node.node_type).pass_through

        successors: Dict[str, List[str]] = {node_id: [] for node_id in node_lookup}
        for edge in edges:
            if node_lookup[edge.source].node_type != NodeType.END and routes_inline(edge.target):
                successors[edge.source].append(edge.target)

        depth: Dict[str, int] = {}

        def chain_length(node_id: str) -> int:
            if node_id not in depth:
                depth[node_id] = 1 + max((chain_length(t) for t in successors[node_id]), default=0)
            return depth[node_id]

        heads = [node_id for node_id in node_lookup if routes_inline(node_id)]
        if not heads:
            return []
        head = max(heads, key=chain_length)
        limit = settings.max_auto_route_hops
        if chain_length(head) <= limit:
            return []
        return [TemplateIssue(
            type="AUTO_ROUTE_TOO_DEEP",
            message=(
                f"Starting at {head}, {chain_length(head)} conditional/end nodes route in a row; "
                f"the limit is {limit}"
            ),
            path="edges",
        )]


def take_snapshot(template: WorkflowTemplate, rbac: Optional[RbacResolver] = None) -> FrozenGraph:
    """
    Validate a template and deep-copy its graph

    Raises:
        InvalidTemplateError: Naming the first defect; all defects in details
    """
    report = TemplateValidator(rbac).validate_template(template)
    if not report.is_valid:
        first = report.errors[0]
        raise InvalidTemplateError(
            f"Template {template.template_id} is invalid: {first.message}",
            details={
                "template_id": template.template_id,
                "errors": [e.model_dump() for e in report.errors],
            }
        )

    snapshot = FrozenGraph(
        template_id=template.template_id,
        template_version=template.version,
        template_name=template.name,
        nodes=[n.model_copy(deep=True) for n in template.nodes],
        edges=[e.model_copy(deep=True) for e in template.edges],
        captured_at=utc_now(),
    )
    logger.info(
        f"Snapshot taken of template {template.template_id} v{template.version}",
        extra={"template_id": template.template_id}
    )
    return snapshot
