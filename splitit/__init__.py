"""
SplitIt

Split a shared restaurant bill from a receipt photo: extract the line items,
assign them to people, and compute what everyone owes including a
proportional share of tax and a configurable tip.
"""

__version__ = "1.0.0"

from splitit.bill_model import Bill, Item, Member
from splitit.errors import ExtractionError, SplitItError, ValidationError, WorkflowError
from splitit.split_logic import MemberSummary, allocate
from splitit.workflow import Stage, WorkflowController

__all__ = [
    "Bill",
    "Item",
    "Member",
    "MemberSummary",
    "allocate",
    "Stage",
    "WorkflowController",
    "SplitItError",
    "ExtractionError",
    "ValidationError",
    "WorkflowError",
]
