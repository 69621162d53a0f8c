# splitit/gemini_ocr.py
import io
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from google import genai  # Main genai module
from google.genai import types  # For type definitions like Tool, GenerateContentConfig
import PIL.Image
from PIL import UnidentifiedImageError
from pydantic import BaseModel, Field
from loguru import logger

from . import config
from .errors import ExtractionError
from .bill_model import to_money
from .split_logic import clean_and_convert_number

FUNCTION_NAME = "extract_receipt_data"
# Upper bound for any single amount read off a receipt
MAX_AMOUNT = Decimal("1000000000")


# --- Pydantic Models ---
class ExtractedItem(BaseModel):
    name: str = Field(description="Item name as printed on the receipt")
    price: Decimal = Field(ge=0, description="Line price")


class ExtractedBill(BaseModel):
    items: List[ExtractedItem] = Field(default_factory=list)
    subtotal: Decimal
    tax: Decimal = Decimal("0.00")
    total: Decimal
    warnings: List[str] = Field(default_factory=list, description="Inconsistencies the caller should show")


def create_flattened_schema():
    """
    JSON schema for the extraction function's parameters.
    Kept flat: Gemini rejects $ref and $defs.
    """
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "description": "Every purchased line item, in receipt order",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {
                            "type": "string",
                            "description": "Item name"
                        },
                        "price": {
                            "type": "number",
                            "description": "Total price for the item line"
                        }
                    },
                    "required": ["name", "price"]
                }
            },
            "subtotal": {
                "type": "number",
                "description": "Subtotal before tax"
            },
            "tax": {
                "type": "number",
                "description": "Total tax charged"
            },
            "total": {
                "type": "number",
                "description": "The final grand total"
            }
        },
        "required": ["items", "total"]
    }


def generate_gemini_prompt_with_guidelines():
    return f"""Extract the items, prices, subtotal, tax, and total from this receipt image by calling the `{FUNCTION_NAME}` function.

Guidelines:
- If specific items are not clear, do your best to estimate.
- Use the line total as the price when an item has a quantity.
- If a subtotal or tax is not printed, leave it out.
"""


def compress_image(image_bytes: bytes, target_size_bytes: Optional[int] = None, quality: int = 90, min_quality: int = 70) -> bytes:
    """Re-encode the upload as JPEG, lowering quality and then size until it fits."""
    if target_size_bytes is None:
        target_size_bytes = config.get_max_image_size_bytes()
    try:
        img = PIL.Image.open(io.BytesIO(image_bytes))
        if img.mode not in ('RGB', 'L'): img = img.convert('RGB')
        compressed_bytes = b""
        for q in range(quality, min_quality - 1, -5):
            buffer = io.BytesIO(); img.save(buffer, format="JPEG", quality=q, optimize=True)
            compressed_bytes = buffer.getvalue()
            if len(compressed_bytes) <= target_size_bytes:
                logger.info(f"Image compressed to {len(compressed_bytes)/1024:.2f} KB with quality {q}.")
                return compressed_bytes
        ratio = (target_size_bytes / len(compressed_bytes))**0.5
        new_width = int(img.width * ratio); new_height = int(img.height * ratio)
        if new_width > 0 and new_height > 0:
            img_resized = img.resize((new_width, new_height), PIL.Image.Resampling.LANCZOS)
            buffer = io.BytesIO(); img_resized.save(buffer, format="JPEG", quality=min_quality, optimize=True)
            compressed_bytes = buffer.getvalue()
            logger.info(f"Resized/compressed image size: {len(compressed_bytes)/1024:.2f} KB.")
        return compressed_bytes
    except UnidentifiedImageError:
        raise ExtractionError("Cannot identify image file.")
    except OSError as e:
        raise ExtractionError(f"Image processing failed: {e}")


def _read_amount(value: Any, label: str) -> Decimal:
    """Parse one extracted amount to cents, rejecting anything unreadable, negative or implausibly large."""
    amount = clean_and_convert_number(value)
    if amount is None:
        raise ExtractionError(f"{label} is not a readable amount: {value!r}.")
    if amount < 0:
        raise ExtractionError(f"{label} is negative: {amount}.")
    if amount > MAX_AMOUNT:
        raise ExtractionError(f"{label} exceeds {MAX_AMOUNT}: {value!r}.")
    try:
        return to_money(amount)
    except InvalidOperation:
        raise ExtractionError(f"{label} cannot be represented in cents: {value!r}.")


def normalize_receipt_data(raw: Any) -> ExtractedBill:
    """
    Turn the model's raw function-call arguments into an ExtractedBill.

    ``items`` and ``total`` are required. Every amount must parse to a
    non-negative value no larger than MAX_AMOUNT, otherwise the whole response
    is rejected. Tax defaults to 0 and subtotal to the sum of item prices.
    """
    if not isinstance(raw, dict):
        raise ExtractionError("Receipt response is not an object.")
    if "items" not in raw or raw["items"] is None:
        raise ExtractionError("Receipt response is missing 'items'.")
    if "total" not in raw or raw["total"] is None:
        raise ExtractionError("Receipt response is missing 'total'.")
    if not isinstance(raw["items"], list):
        raise ExtractionError("Receipt response 'items' is not a list.")

    items = []
    for idx, entry in enumerate(raw["items"], start=1):
        if not isinstance(entry, dict):
            raise ExtractionError(f"Line item {idx} is not an object.")
        price = _read_amount(entry.get("price"), f"Line item {idx} price")
        name = str(entry.get("name") or "").strip() or f"Item {idx}"
        items.append(ExtractedItem(name=name, price=price))

    total = _read_amount(raw["total"], "Receipt total")
    tax = _read_amount(raw["tax"], "Receipt tax") if raw.get("tax") is not None else Decimal("0.00")

    items_sum = sum((item.price for item in items), Decimal("0.00"))
    subtotal = items_sum
    if raw.get("subtotal") is not None:
        try:
            subtotal = _read_amount(raw["subtotal"], "Receipt subtotal")
        except ExtractionError as e:
            logger.warning(f"{e} Using the sum of item prices instead.")

    warnings = []
    if total == 0 and items_sum > 0:
        warnings.append("The receipt total was read as 0.00 although items have prices; check the receipt.")
    elif total > 0 and abs(subtotal + tax - total) > Decimal("0.01"):
        warnings.append(f"Subtotal {subtotal} plus tax {tax} does not match the receipt total {total}.")
    for warning in warnings:
        logger.warning(warning)

    return ExtractedBill(items=items, subtotal=subtotal, tax=tax, total=total, warnings=warnings)


class GeminiReceiptExtractor:
    """Reads a receipt photo through a single Gemini call. No retries."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None, client: Any = None):
        self._api_key = api_key
        self._model_name = model_name
        self._client = client

    def _get_client(self):
        if self._client is None:
            if self._api_key is None or self._model_name is None:
                try:
                    api_key, model_name = config.get_gemini_config()
                except ValueError as e:
                    raise ExtractionError(str(e))
                self._api_key = self._api_key or api_key
                self._model_name = self._model_name or model_name
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def extract(self, image_bytes: bytes) -> ExtractedBill:
        start_time = time.time()
        if not image_bytes:
            raise ExtractionError("No image data received.")
        client = self._get_client()
        model_name = self._model_name or config.DEFAULT_GEMINI_MODEL

        img = PIL.Image.open(io.BytesIO(compress_image(image_bytes)))

        receipt_extraction_function = {
            "name": FUNCTION_NAME,
            "description": "Extracts line items and totals from a receipt image.",
            "parameters": create_flattened_schema()
        }
        config_obj = types.GenerateContentConfig(
            tools=[types.Tool(function_declarations=[receipt_extraction_function])],
            temperature=0.1
        )

        logger.info(f"Sending OCR request to Gemini API ({model_name})...")
        try:
            response = client.models.generate_content(
                model=model_name,
                contents=[generate_gemini_prompt_with_guidelines(), img],
                config=config_obj,
            )
        except Exception as e:
            logger.error(f"An error occurred calling Gemini API: {e}")
            raise ExtractionError(f"Gemini API call failed: {e}") from e
        logger.info(f"Gemini API response received in {time.time() - start_time:.2f} seconds.")

        function_call = _first_function_call(response)
        if function_call is None:
            logger.error("Model did not return a function call.")
            raise ExtractionError("Model did not return the expected function call structure.")
        if function_call.name != FUNCTION_NAME:
            raise ExtractionError(f"Unexpected function call '{function_call.name}'.")

        raw = dict(function_call.args or {})
        logger.debug(json.dumps(raw, indent=2, default=str))
        extracted = normalize_receipt_data(raw)
        logger.info(
            f"Receipt extraction completed in {time.time() - start_time:.2f} seconds: "
            f"{len(extracted.items)} items, total {extracted.total}"
        )
        return extracted


def _first_function_call(response: Any):
    candidates = getattr(response, "candidates", None) or []
    if not candidates or candidates[0].content is None:
        return None
    for part in candidates[0].content.parts or []:
        if getattr(part, "function_call", None):
            return part.function_call
    return None
