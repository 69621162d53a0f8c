# splitit/split_logic.py
import math
import re
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .bill_model import Bill, to_money
from .errors import ValidationError

_THOUSANDS_COMMA = re.compile(r"^-?\d{1,3}(,\d{3})+$")
# One number, optionally wrapped in a currency symbol or code
_SINGLE_AMOUNT = re.compile(r"^[^\d\-.]*(-?)[^\d\-.]*(\d+(?:\.\d*)?|\.\d+)[^\d\-.]*$")


class MemberSummary(BaseModel):
    member_id: str
    member_name: str
    subtotal: Decimal
    tax_share: Decimal
    tip_share: Decimal
    total: Decimal


class BillTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    total: Decimal


def clean_and_convert_number(value: Any) -> Optional[Decimal]:
    """
    Convert an extracted amount (number or receipt-style string) to Decimal.

    Handles currency symbols or codes around the number, thousands separators
    and European decimal commas ("12,50"). Anything that is not a single
    amount ("2x3.00", "1e30") gives None.
    """
    if isinstance(value, bool): return None
    if isinstance(value, (int, float, Decimal)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    if not isinstance(value, str): return None
    stripped = value.strip().replace(" ", "")
    if not stripped: return None

    # Whichever separator comes last is the decimal point
    if ',' in stripped:
        if '.' in stripped:
            if stripped.rfind(',') > stripped.rfind('.'):
                stripped = stripped.replace('.', '').replace(',', '.')
        elif not _THOUSANDS_COMMA.match(re.sub(r'[^\d,\-]', '', stripped)):
            stripped = stripped.replace(',', '.')
    # Any comma left is a thousands separator
    match = _SINGLE_AMOUNT.match(stripped.replace(',', ''))
    if not match: return None
    return Decimal(match.group(1) + match.group(2))


def _to_cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def _from_cents(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2)


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def _apportion(pool: int, exact_shares: Sequence[Fraction]) -> List[int]:
    """
    Largest-remainder apportionment of ``pool`` cents.

    Every member first gets the floor of their exact share; the cents left
    over go to the largest fractional remainders, earlier members first on ties.
    """
    floors = [math.floor(share) for share in exact_shares]
    leftover = pool - sum(floors)
    order = sorted(range(len(exact_shares)), key=lambda i: (-(exact_shares[i] - floors[i]), i))
    for i in order[:max(leftover, 0)]:
        floors[i] += 1
    return floors


def _split_items(bill: Bill, member_ids: List[str]) -> Tuple[Dict[str, Fraction], int]:
    """
    Exact per-member subtotals in cents, plus the cents of all assigned items.

    Each item is split equally among its assignees. Ids that are not current
    members are ignored.
    """
    exact = {mid: Fraction(0) for mid in member_ids}
    assigned = 0
    for item in bill.items:
        assignees = list(dict.fromkeys(mid for mid in item.assigned_to if mid in exact))
        if not assignees:
            continue  # unassigned items are nobody's share
        cents = _to_cents(item.price)
        assigned += cents
        for mid in assignees:
            exact[mid] += Fraction(cents, len(assignees))
    return exact, assigned


def allocate(bill: Bill, tip_rate_percent: Any = None) -> List[MemberSummary]:
    """
    Compute what every member owes for ``bill``.

    Each item is split equally among the members assigned to it. Tax is shared
    in proportion to each member's subtotal; the tip is ``tip_rate_percent`` of
    the member's own subtotal (never of tax). Amounts are exact to the cent:
    with every item assigned, member subtotals sum to the bill subtotal and tax
    shares sum to the bill's tax. The result follows member order and the
    function has no side effects.
    """
    rate = bill.tip_rate if tip_rate_percent is None else tip_rate_percent
    try:
        rate = Decimal(str(rate))
    except InvalidOperation:
        raise ValidationError(f"Tip rate '{tip_rate_percent}' is not a number.")
    if not rate.is_finite() or rate < 0:
        raise ValidationError(f"Tip rate must be a non-negative percentage, got {tip_rate_percent}.")

    members = list(bill.members)
    member_ids = [m.id for m in members]
    bill_subtotal = sum(_to_cents(item.price) for item in bill.items)

    if bill_subtotal == 0:
        zero = _from_cents(0)
        return [
            MemberSummary(member_id=m.id, member_name=m.name, subtotal=zero, tax_share=zero, tip_share=zero, total=zero)
            for m in members
        ]

    exact_subtotals, assigned = _split_items(bill, member_ids)
    exact = [exact_subtotals[mid] for mid in member_ids]
    tax_cents = _to_cents(bill.tax)
    rate_fraction = Fraction(rate) / 100

    # Each column is rounded as a whole so the cents add up to its exact total
    subtotals = _apportion(assigned, exact)
    tax_shares = _apportion(
        _round_half_up(Fraction(tax_cents * assigned, bill_subtotal)),
        [share * tax_cents / bill_subtotal for share in exact],
    )
    tip_shares = _apportion(_round_half_up(assigned * rate_fraction), [share * rate_fraction for share in exact])

    summaries = []
    for member, subtotal, tax_share, tip_share in zip(members, subtotals, tax_shares, tip_shares):
        summaries.append(MemberSummary(
            member_id=member.id,
            member_name=member.name,
            subtotal=_from_cents(subtotal),
            tax_share=_from_cents(tax_share),
            tip_share=_from_cents(tip_share),
            total=_from_cents(subtotal + tax_share + tip_share),
        ))
    return summaries


def summarize(summaries: Sequence[MemberSummary]) -> BillTotals:
    """Grand totals taken from the per-member breakdown, so the shown tip is the exact tip owed."""
    zero = _from_cents(0)
    return BillTotals(
        subtotal=sum((s.subtotal for s in summaries), zero),
        tax=sum((s.tax_share for s in summaries), zero),
        tip=sum((s.tip_share for s in summaries), zero),
        total=sum((s.total for s in summaries), zero),
    )


def is_consistent(summary: MemberSummary) -> bool:
    """True when the summary's parts add up to its total and none is negative."""
    parts = (summary.subtotal, summary.tax_share, summary.tip_share)
    return all(p >= 0 for p in parts) and sum(parts) == summary.total
