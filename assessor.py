"""
Client for the chat-completion model that scores products.

The model answers in free text that is expected to contain a JSON object.
Parsing yields either ``Parsed`` or ``Malformed``; ``resolve`` substitutes
the conservative default for the latter. Transport failures are raised as
``AssessmentError`` subclasses so the caller can tell "try again later"
from "out of credits".
"""

import base64
import io
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

import requests
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from config import AI_API_KEY, AI_GATEWAY_URL, AI_MODEL, AI_TIMEOUT_SECONDS
from schemas import Assessment, ProductDescriptor

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a fraud detection AI for Kenyan e-commerce. Analyze products for:
1. Vendor Trust (40%): reviews sentiment, account age indicators
2. Product Authenticity (30%): image quality, branding consistency
3. Supply Chain & Payment (20%): M-Pesa safety, geo-risk factors
4. Price Analysis (10%): comparison to market averages

Consider platforms like Jumia, Kilimall, Jiji and local vendors.
Return only a JSON object, no markdown, with:
- overall_score (0-100, higher is safer)
- verdict (SAFE, CAUTION or DANGER)
- risk_factors: array of {name, score (0-100), details}
- recommendations: array of strings"""

FALLBACK_ASSESSMENT = Assessment(
    overall_score=50,
    verdict="CAUTION",
    risk_factors=[],
    recommendations=["Manual review recommended"],
)

VERDICT_ALIASES = {
    "safe": "SAFE",
    "caution": "CAUTION",
    "unsafe": "DANGER",
    "danger": "DANGER",
    "dangerous": "DANGER",
}

MAX_IMAGE_SIDE = 1024

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class AssessmentError(Exception):
    status_code = 500
    message = "Risk assessment is unavailable. Please try again later."


class AssessmentRateLimited(AssessmentError):
    status_code = 429
    message = "AI rate limit exceeded. Please try again later."


class AssessmentCreditsExhausted(AssessmentError):
    status_code = 402
    message = "AI credits exhausted. Please contact support."


class AssessmentUnavailable(AssessmentError):
    pass


class InvalidImage(ValueError):
    pass


@dataclass(frozen=True)
class Parsed:
    assessment: Assessment


@dataclass(frozen=True)
class Malformed:
    raw: str


AssessmentResult = Union[Parsed, Malformed]


def parse_assessment(content: Optional[str]) -> AssessmentResult:
    raw = content or ""
    match = _OBJECT_RE.search(_FENCE_RE.sub("", raw))
    if not match:
        return Malformed(raw)
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return Malformed(raw)
    if not isinstance(data, dict):
        return Malformed(raw)
    verdict = str(data.get("verdict", "")).strip().lower()
    data["verdict"] = VERDICT_ALIASES.get(verdict, data.get("verdict"))
    # Some models call it "detail"
    for factor in data.get("risk_factors") or []:
        if isinstance(factor, dict) and "details" not in factor and "detail" in factor:
            factor["details"] = factor.pop("detail")
    try:
        return Parsed(Assessment.model_validate(data))
    except ValidationError:
        return Malformed(raw)


def resolve(result: AssessmentResult) -> Assessment:
    if isinstance(result, Parsed):
        return result.assessment
    logger.warning("Malformed assessment, using fallback: %.200r", result.raw)
    return FALLBACK_ASSESSMENT


def image_data_url(contents: bytes) -> str:
    """Validate an uploaded image and shrink it to something the model accepts."""
    try:
        with Image.open(io.BytesIO(contents)) as img:
            img.load()
            img = img.convert("RGB")
            img.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=85)
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImage("Uploaded file is not a readable image") from e
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def build_user_prompt(product: ProductDescriptor) -> str:
    lines = ["Analyze this product for authenticity and safety:"]
    lines.append(f"Name: {product.name or 'Unknown'}")
    lines.append(f"Price: {product.price if product.price is not None else 'Not specified'}")
    lines.append(f"Vendor: {product.vendor or 'Unknown'}")
    lines.append(f"Platform: {product.platform or 'Unknown'}")
    if product.url:
        lines.append(f"Listing URL: {product.url}")
    lines.append(f"Description: {product.description or 'No description'}")
    if product.image_url and not product.image_url.startswith("data:"):
        lines.append(f"Image: {product.image_url}")
    lines.append("Consider Kenyan market context: counterfeit electronics, unverified M-Pesa "
                 "transactions, high-risk vendor locations.")
    return "\n".join(lines)


class RiskAssessor:
    """Callable ``assess(product) -> AssessmentResult`` backed by the AI gateway."""

    def __init__(self, api_key: str = AI_API_KEY, url: str = AI_GATEWAY_URL, model: str = AI_MODEL,
                 timeout: float = AI_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.url = url
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def _messages(self, product: ProductDescriptor) -> list:
        prompt = build_user_prompt(product)
        if product.image_url and product.image_url.startswith("data:"):
            user_content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": product.image_url}},
            ]
        else:
            user_content = prompt
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]

    def __call__(self, product: ProductDescriptor) -> AssessmentResult:
        if not self.api_key:
            raise AssessmentUnavailable("AI service not configured")
        try:
            resp = self.session.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={"model": self.model, "messages": self._messages(product), "temperature": 0.3},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("AI gateway unreachable: %s", e)
            raise AssessmentUnavailable(str(e)) from e

        if resp.status_code == 429:
            raise AssessmentRateLimited("AI gateway rate limited the request")
        if resp.status_code == 402:
            raise AssessmentCreditsExhausted("AI gateway credits exhausted")
        if not resp.ok:
            logger.error("AI gateway error %s: %.300s", resp.status_code, resp.text)
            raise AssessmentUnavailable(f"AI gateway returned {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return Malformed(resp.text)
        return parse_assessment(content if isinstance(content, str) else json.dumps(content))
