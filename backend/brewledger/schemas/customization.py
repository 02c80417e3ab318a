"""Order line customizations.

Stored on ``OrderItem.customizations`` as a JSON list of objects tagged by
``type``::

    [{"type": "add", "ingredient_id": 4, "amount": 1, "unit": "pump"},
     {"type": "remove", "ingredient_id": 2},
     {"type": "substitute", "ingredient_id": 1, "substitute_ingredient_id": 7}]
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class AddCustomization(BaseModel):
    """Select an optional ingredient and/or add an extra amount of one."""

    type: Literal["add"] = "add"
    ingredient_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0)
    unit: Optional[str] = None


class RemoveCustomization(BaseModel):
    """Leave an ingredient out of the base recipe."""

    type: Literal["remove"] = "remove"
    ingredient_id: int


class SubstituteCustomization(BaseModel):
    """Swap a base ingredient for another (e.g. oat milk for whole milk)."""

    type: Literal["substitute"] = "substitute"
    ingredient_id: int
    substitute_ingredient_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0)
    unit: Optional[str] = None

    @model_validator(mode="after")
    def check_distinct(self) -> "SubstituteCustomization":
        if self.ingredient_id == self.substitute_ingredient_id:
            raise ValueError("an ingredient cannot substitute itself")
        return self


Customization = Annotated[
    Union[AddCustomization, RemoveCustomization, SubstituteCustomization],
    Field(discriminator="type"),
]

customization_list_adapter = TypeAdapter(List[Customization])
