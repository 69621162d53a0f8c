# splitit/bill_model.py
import itertools
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .errors import ValidationError

CENT = Decimal("0.01")

_id_counter = itertools.count(1)


def to_money(amount: Any) -> Decimal:
    """Quantize an amount to cents, rounding half up."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_id(prefix: str) -> str:
    """Return an id unique within the running process, e.g. ``mem-7``."""
    return f"{prefix}-{next(_id_counter)}"


class Member(BaseModel):
    id: str
    name: str


class Item(BaseModel):
    id: str
    name: str
    price: Decimal = Field(ge=0, description="Line price, fixed at creation")
    assigned_to: List[str] = Field(default_factory=list, description="Member ids sharing this item")


class Bill:
    """
    Mutable aggregate of everything one splitting session knows about a receipt.

    Items are created once from extraction and afterwards only change through
    assignment toggling. Member removal strips the member from every item
    before returning, so no item ever references a removed member.
    """

    def __init__(self, tip_rate: Decimal = Decimal("18"), members: Iterable[Member] = ()):
        self._items: List[Item] = []
        self._members: List[Member] = [m.model_copy() for m in members]
        self._items_set = False
        self.tax = Decimal("0.00")
        self.total = Decimal("0.00")
        self._subtotal: Optional[Decimal] = None
        self.tip_rate = Decimal("0")
        self.warnings: List[str] = []
        self.set_tip_rate(tip_rate)

    # --- read access ---

    @property
    def items(self) -> tuple[Item, ...]:
        return tuple(self._items)

    @property
    def members(self) -> tuple[Member, ...]:
        return tuple(self._members)

    @property
    def subtotal(self) -> Decimal:
        if self._subtotal is not None:
            return self._subtotal
        return sum((item.price for item in self._items), Decimal("0.00"))

    def get_item(self, item_id: str) -> Optional[Item]:
        return next((i for i in self._items if i.id == item_id), None)

    def get_member(self, member_id: str) -> Optional[Member]:
        return next((m for m in self._members if m.id == member_id), None)

    def unassigned_items(self) -> List[Item]:
        return [item for item in self._items if not item.assigned_to]

    def all_items_assigned(self) -> bool:
        return not self.unassigned_items()

    # --- mutators ---

    def set_items(self, extracted_items: Iterable[Any]) -> List[Item]:
        """Create the bill's items from extracted ``{name, price}`` lines. Allowed once per bill."""
        if self._items_set:
            raise ValidationError("Items have already been set for this bill.")
        items = []
        for line in extracted_items:
            price = to_money(line.price)
            if price < 0:
                raise ValidationError(f"Item '{line.name}' has a negative price.")
            items.append(Item(id=new_id("item"), name=line.name, price=price))
        self._items = items
        self._items_set = True
        logger.info(f"Bill populated with {len(items)} items.")
        return list(items)

    def set_totals(self, tax: Decimal, total: Decimal, subtotal: Optional[Decimal] = None) -> None:
        if tax < 0:
            raise ValidationError("Tax cannot be negative.")
        self.tax = to_money(tax)
        self.total = to_money(total)
        self._subtotal = to_money(subtotal) if subtotal is not None else None

    def set_tip_rate(self, rate: Any) -> Decimal:
        """Set the tip percentage. Rates above 100 are allowed; negative ones are not."""
        try:
            value = Decimal(str(rate))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Tip rate '{rate}' is not a number.")
        if not value.is_finite() or value < 0:
            raise ValidationError(f"Tip rate must be a non-negative percentage, got {rate}.")
        self.tip_rate = value
        return value

    def add_member(self, name: str) -> Member:
        """Add a member. Names are trimmed; a blank name is rejected, duplicates are allowed."""
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Member name cannot be blank.")
        member = Member(id=new_id("mem"), name=cleaned)
        self._members.append(member)
        return member

    def remove_member(self, member_id: str) -> bool:
        member = self.get_member(member_id)
        if member is None:
            logger.warning(f"Ignoring removal of unknown member '{member_id}'.")
            return False
        self._members = [m for m in self._members if m.id != member_id]
        for item in self._items:
            if member_id in item.assigned_to:
                item.assigned_to = [mid for mid in item.assigned_to if mid != member_id]
        return True

    def toggle_assignment(self, item_id: str, member_id: str) -> bool:
        """Flip whether ``member_id`` shares ``item_id``. Unknown ids leave the bill untouched."""
        item = self.get_item(item_id)
        if item is None or self.get_member(member_id) is None:
            logger.warning(f"Ignoring assignment toggle for unknown item '{item_id}' or member '{member_id}'.")
            return False
        if member_id in item.assigned_to:
            item.assigned_to = [mid for mid in item.assigned_to if mid != member_id]
        else:
            item.assigned_to = item.assigned_to + [member_id]
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.model_dump(mode="json") for item in self._items],
            "members": [member.model_dump(mode="json") for member in self._members],
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "total": str(self.total),
            "tip_rate": str(self.tip_rate),
            "warnings": list(self.warnings),
        }
