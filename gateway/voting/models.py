from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class PayoutStatus(str, Enum):
    NONE    = "none"
    PENDING = "pending"
    PAID    = "paid"
    FAILED  = "failed"


# Forward-only transitions; at most one move out of NONE per product.
PAYOUT_TRANSITIONS = {
    PayoutStatus.NONE:    {PayoutStatus.PENDING},
    PayoutStatus.PENDING: {PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.PAID:    set(),
    PayoutStatus.FAILED:  set(),
}


def is_allowed_transition(old: PayoutStatus, new: PayoutStatus) -> bool:
    return new in PAYOUT_TRANSITIONS.get(old, set())


class Category(str, Enum):
    FINANCE      = "finance"
    WEB3         = "web3"
    AI           = "ai"
    PRODUCTIVITY = "productivity"
    DEVELOPER    = "developer"
    DESIGN       = "design"
    OTHER        = "other"
    GENERAL      = "General"


@dataclass
class Product:
    title:          str
    maker_address:  str
    category:       Category      = Category.GENERAL
    tagline:        Optional[str] = None
    description:    Optional[str] = None
    website_url:    Optional[str] = None
    youtube_url:    Optional[str] = None
    image_url:      Optional[str] = None
    id:             str           = field(default_factory=lambda: str(uuid.uuid4()))
    vote_count:     int           = 0
    payout_status:  PayoutStatus  = PayoutStatus.NONE
    payout_data:    Optional[dict] = None
    payout_error:   Optional[str] = None
    created_at:     int           = 0
    payout_updated_at: int        = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id":              self.id,
            "title":           self.title,
            "tagline":         self.tagline,
            "description":     self.description,
            "makerAddress":    self.maker_address,
            "category":        self.category.value,
            "websiteUrl":      self.website_url,
            "youtubeUrl":      self.youtube_url,
            "imageUrl":        self.image_url,
            "voteCount":       self.vote_count,
            "payoutStatus":    self.payout_status.value,
            "payoutData":      self.payout_data,
            "createdAt":       self.created_at,
        }


@dataclass
class RateLimitRecord:
    identifier:   str
    count:        int
    window_start: int   # epoch millis

    def expired(self, now_ms: int, window_ms: int) -> bool:
        return now_ms > self.window_start + window_ms
