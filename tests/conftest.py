import io
from decimal import Decimal

import pytest
from PIL import Image

from splitit.bill_model import Bill
from splitit.errors import ExtractionError
from splitit.gemini_ocr import ExtractedBill, ExtractedItem


def make_bill(lines, tax="0.00", tip_rate="18"):
    """Bill with items from ``(name, price)`` pairs; members are added by the test."""
    bill = Bill(tip_rate=Decimal(tip_rate))
    bill.set_items([ExtractedItem(name=name, price=Decimal(price)) for name, price in lines])
    bill.set_totals(tax=Decimal(tax), total=Decimal("0.00"))
    return bill


class FakeExtractor:
    """Returns a canned bill, or raises the exception it was given."""

    def __init__(self, result):
        self.result = result
        self.calls = 0

    def extract(self, image_bytes):
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def extracted_bill():
    return ExtractedBill(
        items=[
            ExtractedItem(name="Burger", price=Decimal("10.00")),
            ExtractedItem(name="Soda", price=Decimal("2.00")),
        ],
        subtotal=Decimal("12.00"),
        tax=Decimal("1.20"),
        total=Decimal("13.20"),
    )


@pytest.fixture
def fake_extractor(extracted_bill):
    return FakeExtractor(extracted_bill)


@pytest.fixture
def failing_extractor():
    return FakeExtractor(ExtractionError("Gemini API call failed: timeout"))


@pytest.fixture
def receipt_png():
    buffer = io.BytesIO()
    Image.new("RGB", (40, 60), color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()
