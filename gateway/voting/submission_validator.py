"""
ARCHUNT :: Submission validation
================================
Typed request models for product submissions and votes, plus the text
sanitizer applied to everything that ends up on a product card.

Wallet addresses are normalized to lower-case by one shared validator on
both the submission and the vote path, so two casings of the same address
can never slip past vote dedup or per-wallet rate limits.
"""

from __future__ import annotations

import re
import uuid
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from voting.errors import ValidationFailed
from voting.models import Category, Product

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

TITLE_MAX       = 100
TAGLINE_MAX     = 200
DESCRIPTION_MAX = 1000
URL_MAX         = 2048

_MARKUP_CHARS = re.compile(r"[<>]")


def sanitize_text(text: str) -> str:
    """Drop characters that could open an HTML tag, then trim."""
    return _MARKUP_CHARS.sub("", text).strip()


def normalize_wallet_address(value: Any) -> str:
    if not isinstance(value, str) or not WALLET_ADDRESS_RE.match(value.strip()):
        raise ValueError("Invalid wallet address format")
    return value.strip().lower()


def _optional_text(value: Optional[str], label: str, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = sanitize_text(value)
    if len(text) > max_len:
        raise ValueError(f"{label} must be less than {max_len} characters")
    return text or None


def _optional_url(value: Optional[str], label: str) -> Optional[str]:
    if value is None or not value.strip():
        return None
    url = value.strip()
    if len(url) > URL_MAX or _MARKUP_CHARS.search(url) or any(c.isspace() for c in url):
        raise ValueError(f"{label} must be a valid http(s) URL")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{label} must be a valid http(s) URL")
    return url


class SignedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signature: str
    message:   str
    timestamp: StrictInt = Field(gt=0)

    @field_validator("signature")
    @classmethod
    def _signature_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Wallet signature required")
        return v.strip()

    @field_validator("message")
    @classmethod
    def _message_present(cls, v: str) -> str:
        # the signed text is whitespace-significant: never strip it
        if not v:
            raise ValueError("Signed message required")
        return v


class ProductSubmission(SignedRequest):
    title:         str
    tagline:       Optional[str] = None
    description:   Optional[str] = None
    maker_address: str           = Field(alias="makerAddress")
    category:      Category      = Category.GENERAL
    website_url:   Optional[str] = Field(default=None, alias="websiteUrl")
    youtube_url:   Optional[str] = Field(default=None, alias="youtubeUrl")
    image_url:     Optional[str] = Field(default=None, alias="imageUrl")

    @field_validator("title")
    @classmethod
    def _title(cls, v: str) -> str:
        text = sanitize_text(v)
        if not text:
            raise ValueError("Title is required")
        if len(text) > TITLE_MAX:
            raise ValueError(f"Title must be less than {TITLE_MAX} characters")
        return text

    @field_validator("tagline")
    @classmethod
    def _tagline(cls, v: Optional[str]) -> Optional[str]:
        return _optional_text(v, "Tagline", TAGLINE_MAX)

    @field_validator("description")
    @classmethod
    def _description(cls, v: Optional[str]) -> Optional[str]:
        return _optional_text(v, "Description", DESCRIPTION_MAX)

    @field_validator("maker_address", mode="before")
    @classmethod
    def _maker_address(cls, v: Any) -> str:
        return normalize_wallet_address(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category_default(cls, v: Any) -> Any:
        return Category.GENERAL if v in (None, "") else v

    @field_validator("website_url", "youtube_url", "image_url")
    @classmethod
    def _urls(cls, v: Optional[str], info) -> Optional[str]:
        label = {"website_url": "Website URL", "youtube_url": "YouTube URL", "image_url": "Image URL"}[info.field_name]
        return _optional_url(v, label)

    def to_product(self, created_at: int) -> Product:
        return Product(
            title         = self.title,
            tagline       = self.tagline,
            description   = self.description,
            maker_address = self.maker_address,
            category      = self.category,
            website_url   = self.website_url,
            youtube_url   = self.youtube_url,
            image_url     = self.image_url,
            created_at    = created_at,
        )


class VoteRequest(SignedRequest):
    product_id:    str = Field(alias="productId")
    voter_address: str = Field(alias="voterAddress")

    @field_validator("product_id", mode="before")
    @classmethod
    def _product_id(cls, v: Any) -> str:
        try:
            return str(uuid.UUID(str(v)))
        except (ValueError, TypeError, AttributeError):
            raise ValueError("Invalid product ID format") from None

    @field_validator("voter_address", mode="before")
    @classmethod
    def _voter_address(cls, v: Any) -> str:
        return normalize_wallet_address(v)


# ── pydantic errors -> ValidationFailed ────────────────────────────────────────

def validation_failed_from(errors: list[dict]) -> ValidationFailed:
    """Report the first failing constraint, with the request field it belongs to."""
    if not errors:
        return ValidationFailed()
    first = errors[0]
    loc   = [str(p) for p in first.get("loc", ()) if p != "body"]
    field = loc[-1] if loc else None
    msg   = first.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    elif first.get("type") == "missing" and field:
        msg = f"{field} is required"
    elif field:
        msg = f"{field}: {msg}"
    return ValidationFailed(message=msg, field=field)


def _parse(model: type[BaseModel], data: Any):
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise validation_failed_from(e.errors()) from e


def parse_submission(data: Any) -> ProductSubmission:
    return _parse(ProductSubmission, data)


def parse_vote(data: Any) -> VoteRequest:
    return _parse(VoteRequest, data)
