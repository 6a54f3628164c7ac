"""
Test Suite

    tests/
    ├── conftest.py                  # MongoDB (mongomock), RBAC and template fixtures
    ├── test_condition_evaluator.py  # Rule evaluation
    ├── test_approval_aggregator.py  # Vote dedup and resolution
    ├── test_snapshot.py             # Template validation and snapshots
    ├── test_engine.py               # End-to-end engine scenarios
    ├── test_concurrency.py          # Racing commands on one instance
    ├── test_rbac.py                 # Default RBAC resolver and permission guard
    └── test_api.py                  # HTTP endpoints

To run tests:
    pytest backend/tests/
"""
