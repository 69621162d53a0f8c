# splitit/workflow.py
import asyncio
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from loguru import logger

from . import config
from .bill_model import Bill, Member
from .errors import ExtractionError, WorkflowError
from .split_logic import MemberSummary, allocate, summarize

EXTRACTION_FAILED_MESSAGE = "Oops! Failed to parse the receipt. Please try again with a clearer photo."


class Stage(str, Enum):
    """Bill-splitting stages, in order."""
    UPLOAD = "upload"
    MEMBERS = "members"
    SPLIT = "split"
    SUMMARY = "summary"


_ORDER = [Stage.UPLOAD, Stage.MEMBERS, Stage.SPLIT, Stage.SUMMARY]


class WorkflowController:
    """
    Owns one bill and walks it through upload, members, split and summary.

    All edits run synchronously. Receipt extraction is the only awaitable step
    and at most one runs at a time; a result that lands after ``reset()`` is
    thrown away.
    """

    def __init__(self, extractor: Any, tip_rate: Optional[Decimal] = None):
        self._extractor = extractor
        self._default_tip_rate = config.get_default_tip_rate() if tip_rate is None else tip_rate
        self.bill = Bill(tip_rate=self._default_tip_rate)
        self.stage = Stage.UPLOAD
        self.error: Optional[str] = None
        self._generation = 0
        self._pending = False

    @property
    def is_extracting(self) -> bool:
        return self._pending

    # --- upload ---

    async def submit_receipt(self, image_bytes: bytes) -> bool:
        """
        Extract ``image_bytes`` and, on success, load the bill and move to the members stage.

        Returns False when extraction failed or the result went stale; ``error``
        then holds the message to show.
        """
        if self.stage != Stage.UPLOAD:
            raise WorkflowError(f"Receipts can only be uploaded in the upload stage, not '{self.stage.value}'.")
        if self._pending:
            raise WorkflowError("A receipt is already being processed.")

        generation = self._generation
        self._pending = True
        self.error = None
        try:
            extracted = await asyncio.to_thread(self._extractor.extract, image_bytes)
        except ExtractionError as e:
            if generation == self._generation:
                logger.warning(f"Receipt extraction failed: {e}")
                self.error = EXTRACTION_FAILED_MESSAGE
            return False
        except Exception:
            if generation == self._generation:
                logger.exception("Unexpected error during receipt extraction")
                self.error = EXTRACTION_FAILED_MESSAGE
            return False
        finally:
            if generation == self._generation:
                self._pending = False

        if generation != self._generation:
            logger.info("Discarding extraction result that finished after a reset.")
            return False

        bill = Bill(tip_rate=self.bill.tip_rate, members=self.bill.members)
        bill.set_items(extracted.items)
        bill.set_totals(tax=extracted.tax, total=extracted.total, subtotal=extracted.subtotal)
        bill.warnings = list(extracted.warnings)
        self.bill = bill
        self._move_to(Stage.MEMBERS)
        return True

    # --- edits ---

    def add_member(self, name: str) -> Member:
        self._require(Stage.MEMBERS, "Members can only be added in the members stage.")
        return self.bill.add_member(name)

    def remove_member(self, member_id: str) -> bool:
        self._require(Stage.MEMBERS, "Members can only be removed in the members stage.")
        return self.bill.remove_member(member_id)

    def toggle_assignment(self, item_id: str, member_id: str) -> bool:
        self._require(Stage.SPLIT, "Items can only be assigned in the split stage.")
        return self.bill.toggle_assignment(item_id, member_id)

    def set_tip_rate(self, rate: Any) -> Decimal:
        value = self.bill.set_tip_rate(rate)
        logger.info(f"Tip rate set to {value}%")
        return value

    def _require(self, stage: Stage, message: str) -> None:
        if self.stage != stage:
            raise WorkflowError(message)

    # --- transitions ---

    def can_advance(self) -> bool:
        if self.stage == Stage.MEMBERS:
            return len(self.bill.members) >= 1
        if self.stage == Stage.SPLIT:
            return self.bill.all_items_assigned()
        return False

    def advance(self) -> Stage:
        if self.stage == Stage.UPLOAD:
            raise WorkflowError("Upload a receipt to continue.")
        if self.stage == Stage.SUMMARY:
            raise WorkflowError("The summary is the last stage; reset to start a new bill.")
        if self.stage == Stage.MEMBERS and not self.can_advance():
            raise WorkflowError("Add at least one member to continue.")
        if self.stage == Stage.SPLIT and not self.can_advance():
            unassigned = ", ".join(item.name for item in self.bill.unassigned_items())
            raise WorkflowError(f"Assign all items to continue. Unassigned: {unassigned}")
        self._move_to(_ORDER[_ORDER.index(self.stage) + 1])
        return self.stage

    def back(self) -> Stage:
        if self.stage == Stage.UPLOAD:
            raise WorkflowError("Already at the first stage.")
        self._move_to(_ORDER[_ORDER.index(self.stage) - 1])
        return self.stage

    def reset(self) -> None:
        """Drop the bill and members and return to upload. An in-flight extraction becomes stale."""
        self._generation += 1
        self._pending = False
        self.bill = Bill(tip_rate=self._default_tip_rate)
        self.error = None
        self._move_to(Stage.UPLOAD)

    def _move_to(self, stage: Stage) -> None:
        if stage != self.stage:
            logger.info(f"Workflow stage {self.stage.value} -> {stage.value}")
        self.stage = stage

    # --- summary ---

    def summary(self) -> List[MemberSummary]:
        """Allocation for the current bill and tip rate, recomputed on every call."""
        self._require(Stage.SUMMARY, "The summary is only available once every item is assigned.")
        return allocate(self.bill)

    def member_summary(self, member_id: str) -> Optional[MemberSummary]:
        return next((s for s in self.summary() if s.member_id == member_id), None)

    def snapshot(self) -> dict[str, Any]:
        data = {
            "stage": self.stage.value,
            "extracting": self._pending,
            "error": self.error,
            "can_advance": self.can_advance(),
            "bill": self.bill.to_dict(),
        }
        if self.stage == Stage.SUMMARY:
            summaries = self.summary()
            data["summary"] = [s.model_dump(mode="json") for s in summaries]
            data["totals"] = summarize(summaries).model_dump(mode="json")
        return data
