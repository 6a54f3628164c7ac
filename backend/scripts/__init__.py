"""
Backend Scripts Module

Utility scripts for database setup and template checks.

Available scripts:
    - seed_data.py: Creates RBAC entities and a sample purchase template
    - validate_template.py: Validates a template JSON file offline

Usage:
    python -m scripts.seed_data
    python -m scripts.validate_template path/to/template.json
"""
