"""
Vision / chat inference client.

Every call goes through the service gateway and every provider error is
translated into the InferenceError family, so handlers only ever see
RateLimited, InferenceTimeout, InvalidResponse or InferenceError.
"""
import asyncio
import json
import re
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from pantry_jobs.config import get_settings
from pantry_jobs.errors import InferenceError, InferenceTimeout, InvalidResponse, RateLimited
from pantry_jobs.schemas.jobs import ExtractedItem
from pantry_jobs.services.gateway import CircuitOpenError, ServiceGateway, get_gateway
from pantry_jobs.utils.logger import logger

OCR_PROMPT = """You read photos of grocery receipts, pantry shelves and food labels.

Return JSON only, shaped as:
{"raw_text": "<all text you can read>",
 "items": [{"name": "...", "quantity": <number>, "unit": "pcs|g|kg|ml|l|pack", "confidence": <0..1>}]}

List each distinct food item once. Use quantity 1 and unit "pcs" when unsure.
If the image has no food items, return an empty items list."""


class InferenceClient:
    """Thin async wrapper over the OpenAI SDK for OCR and chat completions"""

    def __init__(self, client: Optional[AsyncOpenAI] = None, gateway: Optional[ServiceGateway] = None):
        self.settings = get_settings()
        self.gateway = gateway or get_gateway()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise InferenceError(
                    "OPENAI_API_KEY not configured; set it or enable TEST_MODE for canned results"
                )
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def analyze_image(self, image_ref: str) -> Dict[str, Any]:
        """
        Run OCR + item extraction on an uploaded image.

        Returns {"raw_text": str, "items": [{"name", "quantity", "unit", "confidence"}]}.
        """
        if self.settings.test_mode:
            logger.info("inference.test_mode", extra={"service": "vision"})
            return {
                "raw_text": "MILK 1L\nEGGS x12",
                "items": [
                    {"name": "Milk", "quantity": 1, "unit": "l", "confidence": 0.93},
                    {"name": "Eggs", "quantity": 12, "unit": "pcs", "confidence": 0.88},
                ],
            }

        response = await self._call(
            "vision",
            self.client.chat.completions.create,
            model=self.settings.vision_model,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": OCR_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Extract the food items from this image."},
                        {"type": "image_url", "image_url": {"url": image_ref}},
                    ],
                },
            ],
        )
        return parse_ocr_response(_message_content(response))

    async def chat_complete(self, prompt: str, tools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Single-turn chat completion. Returns {"content": str, "tool_calls": [...]}."""
        if self.settings.test_mode:
            return {"content": f"[test mode] insights for: {prompt[:80]}", "tool_calls": []}

        kwargs: Dict[str, Any] = {
            "model": self.settings.chat_model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if tools:
            kwargs["tools"] = tools

        response = await self._call("chat", self.client.chat.completions.create, **kwargs)
        message = response.choices[0].message if response.choices else None
        if message is None:
            raise InvalidResponse("Model returned no choices")

        tool_calls = [
            {"name": call.function.name, "arguments": call.function.arguments}
            for call in (message.tool_calls or [])
        ]
        if not message.content and not tool_calls:
            raise InvalidResponse("Model returned an empty message")
        return {"content": message.content or "", "tool_calls": tool_calls}

    async def _call(self, service: str, fn, **kwargs):
        try:
            return await self.gateway.execute(service, fn, **kwargs)
        except openai.RateLimitError as exc:
            raise RateLimited(f"{service} rate limited: {exc}") from exc
        except (openai.APITimeoutError, asyncio.TimeoutError) as exc:
            raise InferenceTimeout(f"{service} request timed out") from exc
        except CircuitOpenError as exc:
            raise InferenceError(str(exc)) from exc
        except openai.OpenAIError as exc:
            raise InferenceError(f"{service} request failed: {exc}") from exc


def _message_content(response) -> str:
    if not response.choices or not response.choices[0].message.content:
        raise InvalidResponse("Model returned no content")
    return response.choices[0].message.content


FOOD_KEYWORDS = (
    "apple", "banana", "orange", "milk", "bread", "cheese", "chicken", "beef",
    "pork", "rice", "pasta", "tomato", "potato", "onion", "carrot", "broccoli",
    "spinach", "egg", "butter", "yogurt", "cereal", "flour", "sugar", "salt",
    "pepper", "oil", "vinegar", "garlic", "lemon", "lime", "berry", "grape",
    "melon", "fish", "salmon", "tuna", "shrimp", "beans", "lentils", "nuts", "seeds",
)
MAX_TEXT_ITEMS = 20

_UNITS = r"kg|g|lb|lbs|oz|ml|l|cups?|tbsp|tsp|pieces?|pcs?|items?"
_QUANTITY_RE = re.compile(rf"(\d+(?:\.\d+)?)\s*({_UNITS})\b", re.IGNORECASE)
_LIST_NUMBER_RE = re.compile(r"^\d+[.\-)]\s*")
_PRICE_RE = re.compile(r"\$\d+[.\d]*")


def _clean_item_name(name: str) -> str:
    words = re.sub(r"[^\w\s]", " ", name).split()
    return " ".join(words).title()


def parse_items_from_text(text: str) -> List[Dict[str, Any]]:
    """
    Pick food lines out of a free-text answer.

    A line counts when it has a quantity with a unit ("2 kg") or names a
    common food. List numbers, prices and quantities are stripped from the name.
    """
    items: List[Dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if len(line) < 2:
            continue
        quantity = _QUANTITY_RE.search(line)
        lowered = line.lower()
        if not quantity and not any(keyword in lowered for keyword in FOOD_KEYWORDS):
            continue

        name = _LIST_NUMBER_RE.sub("", line)
        name = _PRICE_RE.sub("", name, count=1)
        name = _clean_item_name(_QUANTITY_RE.sub("", name))
        if len(name) < 2:
            continue
        items.append({
            "name": name,
            "quantity": quantity.group(1) if quantity else 1,
            "unit": quantity.group(2).lower() if quantity else "pcs",
        })
    return items[:MAX_TEXT_ITEMS]


def _valid_items(raw_items: List[Any]) -> List[Dict[str, Any]]:
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        try:
            items.append(ExtractedItem.model_validate(raw).model_dump())
        except ValidationError as exc:
            logger.warning(
                "inference.ocr_item_skipped",
                extra={"error": exc.errors()[0]["msg"], "count": len(raw_items)},
            )
    return items


def parse_ocr_response(content: str) -> Dict[str, Any]:
    """
    Turn the model's answer into raw_text + items.

    JSON answers are read item by item and unusable items are skipped.
    Anything that is not JSON is scanned line by line for food items.
    """
    text = content.strip()
    # Some models wrap JSON in a ```json fence despite response_format
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.info("inference.ocr_text_fallback")
        return {"raw_text": content.strip(), "items": _valid_items(parse_items_from_text(content))}
    if not isinstance(parsed, dict):
        raise InvalidResponse("OCR output is not a JSON object")

    raw_items = parsed.get("items") or []
    if not isinstance(raw_items, list):
        raise InvalidResponse("OCR output 'items' is not a list")
    return {"raw_text": str(parsed.get("raw_text") or ""), "items": _valid_items(raw_items)}


_inference_client: Optional[InferenceClient] = None


def get_inference_client() -> InferenceClient:
    global _inference_client
    if _inference_client is None:
        _inference_client = InferenceClient()
    return _inference_client
