"""
Validate a template definition offline

Reads a JSON file holding {"nodes": [...], "edges": [...]} (optionally a
full template document) and prints the validation report. Entity
references are not checked unless --check-entities is given, which needs
the database.

Run: python -m scripts.validate_template path/to/template.json
"""
import argparse
import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError as SchemaError

from stepflow.domain.models import NodeTemplate, EdgeTemplate
from stepflow.engine.snapshot import TemplateValidator


def load_graph(path: str):
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    nodes = [NodeTemplate.model_validate(n) for n in data.get("nodes", [])]
    edges = [EdgeTemplate.model_validate(e) for e in data.get("edges", [])]
    return data.get("name", os.path.basename(path)), nodes, edges


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a workflow template JSON file")
    parser.add_argument("path", help="Template JSON file")
    parser.add_argument(
        "--check-entities",
        action="store_true",
        help="Also check role/department references against the database"
    )
    args = parser.parse_args()

    try:
        name, nodes, edges = load_graph(args.path)
    except (OSError, json.JSONDecodeError, SchemaError) as e:
        print(f"Could not read template: {e}")
        return 2

    rbac = None
    if args.check_entities:
        from stepflow.services.rbac_service import get_rbac_resolver
        rbac = get_rbac_resolver()

    report = TemplateValidator(rbac).validate(nodes, edges)

    print("=" * 60)
    print(f"TEMPLATE: {name}")
    print(f"  Nodes: {len(nodes)}  Edges: {len(edges)}")
    print("=" * 60)

    for node in nodes:
        entity = f" -> {node.entity_ref}" if node.entity_ref else ""
        print(f"  [{node.node_type.value}] {node.node_id} {node.label}{entity}")

    if report.errors:
        print(f"\nERRORS ({len(report.errors)}):")
        for issue in report.errors:
            print(f"  - {issue.type}: {issue.message}")
    if report.warnings:
        print(f"\nWARNINGS ({len(report.warnings)}):")
        for issue in report.warnings:
            print(f"  - {issue.type}: {issue.message}")

    print(f"\nResult: {'VALID' if report.is_valid else 'INVALID'}")
    return 0 if report.is_valid else 1


if __name__ == "__main__":
    sys.exit(main())
