"""Recipe graph: which ingredients a menu item consumes."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from brewledger.db.base import Base, TimestampMixin


class MenuItemIngredient(Base, TimestampMixin):
    """One ingredient line of a menu item's recipe.

    The amount is either given directly in the ingredient's actual unit
    (``required_actual_amount``) or authored in a display unit
    (``required_display_amount`` + ``recipe_unit``, e.g. "1 shot").
    """

    __tablename__ = "menu_item_ingredients"
    __table_args__ = (
        UniqueConstraint("menu_item_id", "ingredient_id", name="uq_menu_item_ingredient"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    # Menu items live in the ordering app's catalogue
    menu_item_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    ingredient_id: Mapped[int] = mapped_column(
        ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    required_actual_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 3), nullable=True)
    required_display_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 3), nullable=True)
    recipe_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_optional: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    ingredient: Mapped["Ingredient"] = relationship("Ingredient", lazy="joined")


from brewledger.models.ingredient import Ingredient
