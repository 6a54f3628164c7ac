"""Transition Resolver - Find the edge leaving a node through a port"""

from ..domain.models import FrozenGraph, EdgeTemplate
from ..domain.errors import NoMatchingEdgeError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TransitionResolver:
    """
    Resolve the outgoing edge for (node, port)

    Given node N and port P:
    1. Find edges where source=N and source_port=P, in declared order
    2. None -> raise NoMatchingEdgeError
    3. Several -> the first declared wins (malformed template fallback)
    """

    def resolve_edge(self, graph: FrozenGraph, node_id: str, port: str) -> EdgeTemplate:
        """
        Resolve the single edge attached to a port

        Raises:
            NoMatchingEdgeError: If the port has no edge
        """
        candidates = graph.outgoing(node_id, port)

        if not candidates:
            raise NoMatchingEdgeError(
                f"No edge leaves node {node_id} through port '{port}'",
                details={"node_id": node_id, "port": port}
            )

        if len(candidates) > 1:
            logger.warning(
                f"Port '{port}' of node {node_id} has {len(candidates)} edges, "
                f"using the first declared ({candidates[0].target})",
                extra={"node_id": node_id, "port": port}
            )

        selected = candidates[0]
        logger.info(
            f"Resolved edge: {node_id} -[{port}]-> {selected.target}",
            extra={"node_id": node_id, "port": port}
        )
        return selected
