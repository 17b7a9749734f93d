# tradinta/services/margin_helper.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tradinta.models import Product
from tradinta.observability import record_event
from tradinta.services.errors import (
    ExternalServiceError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from tradinta.services.tier_resolver import Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierMargin:
    buyer_count: int
    discount_percentage: float
    discounted_price: float
    profit: float
    margin: float

    @property
    def profitable(self) -> bool:
        return self.profit >= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buyer_count": self.buyer_count,
            "discount_percentage": self.discount_percentage,
            "discounted_price": round(self.discounted_price, 2),
            "profit": round(self.profit, 2),
            "margin": round(self.margin, 1),
            "profitable": self.profitable,
        }


def calculate_tier_margins(unit_cost: float, b2b_price: float, tiers: Iterable[Any]) -> List[TierMargin]:
    """Per-tier price, profit and margin; empty when cost or price is not positive."""
    unit_cost = float(unit_cost or 0)
    b2b_price = float(b2b_price or 0)
    if unit_cost <= 0 or b2b_price <= 0:
        return []

    margins: List[TierMargin] = []
    for raw in tiers:
        tier = Tier.coerce(raw)
        discounted = b2b_price * (1 - tier.discount_percentage / 100)
        profit = discounted - unit_cost
        margin = (profit / discounted * 100) if discounted > 0 else 0.0
        margins.append(
            TierMargin(
                buyer_count=tier.buyer_count,
                discount_percentage=tier.discount_percentage,
                discounted_price=discounted,
                profit=profit,
                margin=margin,
            )
        )
    return margins


def all_tiers_profitable(margins: Iterable[TierMargin]) -> bool:
    return all(m.profitable for m in margins)


class MarginHelperService:
    """Guarded write of a new base B2B price after a margin check."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def apply_b2b_price(
        self,
        seller_id: int,
        product_id: int,
        unit_cost: float,
        b2b_price: float,
        tiers: Iterable[Any],
    ) -> Product:
        try:
            margins = calculate_tier_margins(unit_cost, b2b_price, list(tiers))
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError("Each tier needs a buyer count and a discount percentage") from exc
        if not margins:
            raise ValidationError("Unit cost, B2B price and at least one tier are required")
        if not all_tiers_profitable(margins):
            raise ValidationError("One or more tiers would sell below unit cost")

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            raise NotFoundError("Product not found")
        if product.sellerID != seller_id:
            raise NotAuthorizedError("You can only reprice your own products")

        old_price = float(product.price)
        product.price = round(float(b2b_price), 2)
        try:
            self.db.commit()
            self.db.refresh(product)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to update price for product %s", product_id)
            raise ExternalServiceError("Failed to update product price.") from exc

        record_event(
            "product_price_updated",
            {"product_id": product_id, "old_price": old_price, "new_price": float(product.price)},
        )
        logger.info("Base B2B price for product %s set to %s", product_id, product.price)
        return product
