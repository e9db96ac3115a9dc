"""Schema package exports."""

from .credits import CreditAccountRow
from .jobs import WorkflowJob

__all__ = ["CreditAccountRow", "WorkflowJob"]
