"""ID Generation Utilities"""
import uuid
from typing import Optional

from .time import utc_now


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix
    
    Args:
        prefix: Optional prefix for the ID (e.g., 'WFI', 'STEP')
        
    Returns:
        Unique ID string
        
    Examples:
        >>> generate_id('WFI')
        'WFI-a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]
    
    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_template_id() -> str:
    """Generate workflow template ID"""
    return generate_id("WFT")


def generate_instance_id() -> str:
    """Generate workflow instance ID"""
    return generate_id("WFI")


def generate_step_id() -> str:
    """Generate active step ID"""
    return generate_id("STEP")


def generate_round_id() -> str:
    """Generate approval round ID"""
    return generate_id("APR")


def generate_vote_id() -> str:
    """Generate approval vote ID"""
    return generate_id("VOTE")


def generate_feedback_id() -> str:
    """Generate approval feedback ID"""
    return generate_id("FDBK")


def generate_assignment_id() -> str:
    """Generate assignment ID"""
    return generate_id("ASGN")


def generate_history_id() -> str:
    """Generate history entry ID"""
    return generate_id("HIS")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing
    
    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = utc_now().strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
